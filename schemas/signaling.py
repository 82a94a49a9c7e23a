from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from typing import Annotated, Any, Dict, Literal, Optional, Union


class SignalingModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


# Participant -> relay

class JoinRoom(SignalingModel):
    type: Literal["join-room"] = "join-room"
    room_id: str = Field(alias="roomId", min_length=1)

class OfferMessage(SignalingModel):
    type: Literal["offer"] = "offer"
    room_id: str = Field(alias="roomId")
    offer: Dict[str, Any]
    target: Optional[str] = None

class AnswerMessage(SignalingModel):
    type: Literal["answer"] = "answer"
    room_id: str = Field(alias="roomId")
    answer: Dict[str, Any]
    target: Optional[str] = None

class IceCandidateMessage(SignalingModel):
    type: Literal["ice-candidate"] = "ice-candidate"
    room_id: str = Field(alias="roomId")
    candidate: Optional[Dict[str, Any]] = None
    target: Optional[str] = None


ClientMessage = Annotated[
    Union[JoinRoom, OfferMessage, AnswerMessage, IceCandidateMessage],
    Field(discriminator="type"),
]
client_message_adapter = TypeAdapter(ClientMessage)

RELAYED_KINDS = ("offer", "answer", "ice-candidate")


# Relay -> participant

class Welcome(SignalingModel):
    type: Literal["welcome"] = "welcome"
    member_id: str = Field(alias="memberId")

class UserJoined(SignalingModel):
    type: Literal["user-joined"] = "user-joined"
    member_id: str = Field(alias="memberId")

class OfferReceived(SignalingModel):
    type: Literal["offer"] = "offer"
    sender: str
    offer: Dict[str, Any]

class AnswerReceived(SignalingModel):
    type: Literal["answer"] = "answer"
    sender: str
    answer: Dict[str, Any]

class CandidateReceived(SignalingModel):
    type: Literal["ice-candidate"] = "ice-candidate"
    sender: str
    candidate: Optional[Dict[str, Any]] = None

class RelayError(SignalingModel):
    type: Literal["error"] = "error"
    message: str


ServerEvent = Annotated[
    Union[Welcome, UserJoined, OfferReceived, AnswerReceived, CandidateReceived, RelayError],
    Field(discriminator="type"),
]
server_event_adapter = TypeAdapter(ServerEvent)


def delivered(kind: str, sender: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Wire form of a relayed message as seen by the receiving members."""
    key = "candidate" if kind == "ice-candidate" else kind
    return {"type": kind, "sender": sender, key: payload}
