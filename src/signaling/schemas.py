"""Pydantic models for the browser signaling protocol.

Every message is a JSON object whose ``id`` field names its kind.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from media.base import IceCandidate

CallResult = Literal["accepted", "rejected"]


class SignalingMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# Inbound


class RegisterRequest(SignalingMessage):
    id: Literal["register"]
    name: str = ""


class CallRequest(SignalingMessage):
    id: Literal["call"]
    to: str = ""
    from_: str = Field(default="", alias="from")
    sdp_offer: str = Field(alias="sdpOffer")


class IncomingCallResponseRequest(SignalingMessage):
    id: Literal["incomingCallResponse"]
    from_: str | None = Field(default=None, alias="from")
    call_response: Literal["accept", "reject"] = Field(alias="callResponse")
    sdp_offer: str | None = Field(default=None, alias="sdpOffer")


class StopRequest(SignalingMessage):
    id: Literal["stop"]


class IceCandidateRequest(SignalingMessage):
    id: Literal["onIceCandidate"]
    candidate: IceCandidate


InboundMessage = Annotated[
    Union[RegisterRequest, CallRequest, IncomingCallResponseRequest, StopRequest, IceCandidateRequest],
    Field(discriminator="id"),
]

_INBOUND_ADAPTER: TypeAdapter[InboundMessage] = TypeAdapter(InboundMessage)


def parse_inbound_message(text: str) -> InboundMessage:
    """Parse one client frame.

    Raises:
        pydantic.ValidationError: invalid JSON, unknown kind or missing fields.
    """

    return _INBOUND_ADAPTER.validate_json(text)


# Outbound


class RegisterResponse(SignalingMessage):
    id: Literal["registerResponse"] = "registerResponse"
    response: CallResult
    message: str | None = None


class CallResponse(SignalingMessage):
    id: Literal["callResponse"] = "callResponse"
    response: CallResult
    sdp_answer: str | None = Field(default=None, alias="sdpAnswer")
    message: str | None = None


class IncomingCall(SignalingMessage):
    id: Literal["incomingCall"] = "incomingCall"
    from_: str = Field(alias="from")


class StartCommunication(SignalingMessage):
    id: Literal["startCommunication"] = "startCommunication"
    sdp_answer: str = Field(alias="sdpAnswer")


class StopCommunication(SignalingMessage):
    id: Literal["stopCommunication"] = "stopCommunication"
    message: str | None = None


class IceCandidateNotice(SignalingMessage):
    id: Literal["iceCandidate"] = "iceCandidate"
    candidate: IceCandidate


class ErrorMessage(SignalingMessage):
    id: Literal["error"] = "error"
    message: str


def dump_message(message: SignalingMessage) -> dict[str, Any]:
    """Wire representation: camelCase keys, unset optionals omitted."""

    return message.model_dump(by_alias=True, exclude_none=True)
