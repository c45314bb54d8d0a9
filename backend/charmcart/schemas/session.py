from datetime import datetime
from typing import Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict


class GuestSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    expires_at: Optional[datetime] = None

    @classmethod
    def new(cls) -> "GuestSession":
        return cls(session_id=f"guest_{uuid4().hex}")


class UserSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str


SessionIdentity = Union[GuestSession, UserSession]


def describe(identity: SessionIdentity) -> str:
    if isinstance(identity, UserSession):
        return f"user:{identity.user_id}"
    if isinstance(identity, GuestSession):
        return f"guest:{identity.session_id}"
    raise TypeError(f"Unknown session identity: {type(identity).__name__}")
