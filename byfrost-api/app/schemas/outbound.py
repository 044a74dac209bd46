from typing import Literal, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field


class LocationPayload(BaseModel):
    lat: float = Field(validation_alias=AliasChoices("lat", "latitude"))
    lng: float = Field(validation_alias=AliasChoices("lng", "longitude"))
    name: Optional[str] = None
    address: Optional[str] = None


class SendMessageRequest(BaseModel):
    tenant_id: UUID = Field(validation_alias=AliasChoices("tenant_id", "tenantId"))
    instance_id: UUID = Field(validation_alias=AliasChoices("instance_id", "instanceId"))
    to: str
    type: Literal["text", "image", "audio", "video", "document", "location"] = "text"
    text: Optional[str] = None
    media_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("media_url", "mediaUrl"))
    location: Optional[LocationPayload] = None
    case_id: Optional[UUID] = Field(default=None, validation_alias=AliasChoices("case_id", "caseId"))


class SendMessageResponse(BaseModel):
    ok: bool
    message_id: UUID
    delivery_status: str
    delivery_error: Optional[str] = None
