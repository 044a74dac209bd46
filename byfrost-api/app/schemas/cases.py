from typing import Literal, Optional

from pydantic import BaseModel


class CaseStateRequest(BaseModel):
    state: str
    reason: Optional[str] = None


class CaseStateResponse(BaseModel):
    ok: bool
    case_id: str
    state: str


class ResolvePendencyRequest(BaseModel):
    status: Literal["answered", "waived"] = "answered"
    note: Optional[str] = None


class ResolvePendencyResponse(BaseModel):
    ok: bool
    pendency_id: str
    status: str
    case_state: Optional[str] = None
