"""Pydantic schemas for the automation hooks"""
from typing import Literal, Optional

from rsvp_dispatch.schemas.bulk_jobs import CamelModel

RsvpStatusValue = Literal["PENDING", "ACCEPTED", "DECLINED"]


class RsvpStatusChanged(CamelModel):
    """Sent by the RSVP service after it stores a guest's new answer"""
    guest_id: int
    previous_status: Optional[RsvpStatusValue] = None
    status: RsvpStatusValue
