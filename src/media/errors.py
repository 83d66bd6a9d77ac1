"""Failures raised while talking to the media server or building a call pipeline."""

from __future__ import annotations


class MediaEngineError(Exception):
    """A single media server request failed (RPC error, timeout, closed socket)."""


class ProvisioningError(Exception):
    default_detail: str = "Media pipeline could not be created"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class EngineUnavailableError(ProvisioningError):
    default_detail = "Media server is not reachable"


class CallTerminatedError(ProvisioningError):
    default_detail = "Call was terminated during setup"
