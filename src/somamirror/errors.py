"""Exception types shared across the capture pipeline."""

from __future__ import annotations


class SomaMirrorError(Exception):
    """Base class for errors raised by somamirror."""


class CameraUnavailableError(SomaMirrorError):
    """The camera could not be opened (missing device, permission denied)."""


class StreamLostError(SomaMirrorError):
    """The frame source went away while it was still needed."""


class SessionStateError(SomaMirrorError):
    """An operation was requested in a state that does not allow it."""


class StorageError(SomaMirrorError):
    """A record could not be written to or read from the store."""


class ReportBackendError(SomaMirrorError):
    """A report backend returned nothing usable."""
