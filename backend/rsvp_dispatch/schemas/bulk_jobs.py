"""Pydantic schemas for the bulk job API"""
from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts and emits camelCase while using snake_case in Python"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RecipientFilter(CamelModel):
    guest_ids: Optional[List[int]] = None
    rsvp_status: Optional[Union[List[Literal["PENDING", "ACCEPTED", "DECLINED"]], Literal["PENDING", "ACCEPTED", "DECLINED"]]] = None

    def to_service(self) -> Dict[str, Any]:
        return {"guestIds": self.guest_ids, "rsvpStatus": self.rsvp_status}


class BulkJobCreate(CamelModel):
    """Schema for creating a bulk job"""
    event_id: int
    message_kind: Literal["INVITE", "REMINDER", "EVENT_DAY", "THANK_YOU"]
    channel: Literal["chat", "text", "auto"] = "auto"
    message_format: Literal["plain", "buttons", "image"] = "plain"
    template_id: Optional[str] = Field(None, max_length=100)
    recipient_filter: RecipientFilter = Field(default_factory=RecipientFilter)
    overrides: Dict[str, str] = Field(default_factory=dict)


class BulkJobCreated(CamelModel):
    job_id: str
    total_recipients: int
    channel: str
    status: str


class ChunkProgress(CamelModel):
    """Response of the continue endpoint"""
    job_id: str
    status: Optional[str]
    total_recipients: int
    processed: int
    success_count: int
    failed_count: int
    skipped_count: int
    processed_this_call: int
    is_complete: bool
    no_op: bool = False
    error: Optional[str] = None


class BulkJobStatus(CamelModel):
    job_id: str
    event_id: int
    status: str
    message_kind: str
    channel: str
    message_format: str
    total_recipients: int
    processed: int
    success_count: int
    failed_count: int
    skipped_count: int
    is_complete: bool
    automation_flow_id: Optional[int] = None
    last_error: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class BulkJobCancelled(CamelModel):
    job_id: str
    status: str
    cancelled: bool


class DeliveryEntry(CamelModel):
    job_id: str
    recipient_id: int
    channel: str
    message_kind: str
    status: str
    error_kind: Optional[str] = None
    provider_message_id: Optional[str] = None
    attempted_at: Optional[str] = None
