"""Exceptions raised by the external backend adapters.

The orchestrator and safety gate never let these escape; they are mapped to
a DegradeReason and a fixed user-visible message instead.
"""

from __future__ import annotations


class BackendError(RuntimeError):
    """Base class for moderation and completion backend failures."""


class ConfigurationMissing(BackendError):
    """Raised when an unconfigured backend is called anyway."""


class BackendUnavailable(BackendError):
    """Raised when the backend cannot be reached, times out, or rejects the call."""


class MalformedUpstreamResponse(BackendError):
    """Raised when the backend answers with a payload we cannot interpret."""
