from typing import Any, Dict, Optional, Literal
from pydantic import BaseModel

IdentityOrigin = Literal["managed", "local"]
WriteStatus = Literal["ok", "transient", "fatal"]


class Identity(BaseModel):
    uid: str
    origin: IdentityOrigin


class SessionSnapshot(BaseModel):
    # files=None means "no files reported in this snapshot", not "no files".
    # Values are content strings, except for a still-nested snapshot passed
    # through while a repair is in flight.
    files: Optional[Dict[str, Any]] = None
    output: Optional[str] = None


class Participant(BaseModel):
    uid: str
    name: str


class WriteResult(BaseModel):
    """Outcome of a best-effort write; callers decide what to do with it."""
    status: WriteStatus
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @classmethod
    def success(cls) -> "WriteResult":
        return cls(status="ok")

    @classmethod
    def transient(cls, error: str) -> "WriteResult":
        return cls(status="transient", error=error)

    @classmethod
    def fatal(cls, error: str) -> "WriteResult":
        return cls(status="fatal", error=error)
