"""Exception types raised by the relief pipeline."""

from __future__ import annotations


class ReliefError(Exception):
    """Base class for all pipeline errors."""


class DecodeError(ReliefError):
    """Source bytes are empty or not a supported raster format."""


class DepthSamplingError(ReliefError):
    """A depth field cannot be sampled for the requested image."""


class RenderInitError(ReliefError):
    """The drawing surface could not be created."""


class ExportError(ReliefError):
    """There is no live mesh or renderer to export."""


class SessionStateError(ReliefError):
    """An operation was requested in a state that does not allow it."""
