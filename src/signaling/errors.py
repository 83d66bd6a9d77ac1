"""Signaling-level exceptions.

Media server failures live in ``media.errors``; these cover what goes wrong
between the browsers and this service.
"""

from __future__ import annotations


class SignalingError(Exception):
    default_detail: str = "Signaling error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class CallValidationError(SignalingError):
    default_detail = "Invalid request"


class DeliveryError(SignalingError):
    default_detail = "Message could not be delivered"
