from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field

PunchTypeName = Literal["ENTRY", "BREAK_START", "BREAK_END", "EXIT"]


class ClockRequest(BaseModel):
    latitude: Optional[float] = Field(default=None, validation_alias=AliasChoices("latitude", "lat"))
    longitude: Optional[float] = Field(default=None, validation_alias=AliasChoices("longitude", "lng"))
    accuracy_meters: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("accuracy_meters", "accuracy", "accuracyMeters")
    )
    forced_type: Optional[PunchTypeName] = Field(default=None, validation_alias=AliasChoices("forced_type", "forcedType"))
    employee_id: Optional[UUID] = Field(
        default=None,
        validation_alias=AliasChoices("employee_id", "employeeId"),
        description="Admins may clock on behalf of an employee",
    )
    source: Literal["APP", "WHATSAPP"] = "APP"


class JustifyRequest(BaseModel):
    case_id: UUID = Field(validation_alias=AliasChoices("case_id", "caseId"))
    text: str = Field(min_length=1)
    pendency_id: Optional[UUID] = Field(default=None, validation_alias=AliasChoices("pendency_id", "pendencyId"))
    pendency_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("pendency_type", "type"))


class CloseDayRequest(BaseModel):
    case_id: UUID = Field(validation_alias=AliasChoices("case_id", "caseId"))
    note: Optional[str] = None


class AdjustPunchRequest(BaseModel):
    reason: str = Field(validation_alias=AliasChoices("reason", "note"))
    timestamp: Optional[datetime] = None
    type: Optional[PunchTypeName] = None
