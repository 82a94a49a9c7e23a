from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, Union


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_code: str = Field(alias="roomCode", min_length=1, max_length=64)
    ip: str = Field(min_length=1)
    port: Optional[str] = None

    @field_validator("port", mode="before")
    @classmethod
    def port_as_string(cls, value: Union[str, int, None]):
        # Hosts send the port either as a number or as a string
        if value is None or value == "":
            return None
        return str(value)

class RegisterResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    room_code: str = Field(alias="roomCode")
    expires_at: str = Field(alias="expiresAt")

class LookupResponse(BaseModel):
    ip: str
    port: Optional[str] = None

class StatusResponse(BaseModel):
    status: str
    rooms: int
    members: int
    registry: bool
