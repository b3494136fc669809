from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum

from kidfun.modules.profiles.schemas import ProfileSummary


class ThreadStatus(str, Enum):
    IDEA = "idea"
    PROPOSING = "proposing"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RsvpStatus(str, Enum):
    PENDING = "pending"
    GOING = "going"
    MAYBE = "maybe"
    DECLINED = "declined"


class ParticipantRole(str, Enum):
    ORGANIZER = "organizer"
    INVITED = "invited"


class ProposalStatus(str, Enum):
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    WITHDRAWN = "withdrawn"


class ThreadEventType(str, Enum):
    CREATED = "created"
    INVITED = "invited"
    PROPOSED_TIME = "proposed_time"
    ACCEPTED_TIME = "accepted_time"
    RSVP = "rsvp"
    MESSAGE = "message"
    LOCKED = "locked"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


def _not_blank(value: str, label: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError(f"{label} is required")
    return value


class ThreadCreate(BaseModel):
    activity_name: str = Field(max_length=200)
    invite_user_ids: List[str] = []
    provider_id: Optional[str] = None
    provider_name: Optional[str] = None
    provider_url: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    proposed_date: Optional[datetime] = None  # when set, the plan starts in "proposing"

    @field_validator("activity_name")
    @classmethod
    def activity_name_required(cls, v: str) -> str:
        return _not_blank(v, "Activity name")


class ProposalCreate(BaseModel):
    proposed_date: datetime
    notes: Optional[str] = None


class RsvpUpdate(BaseModel):
    status: RsvpStatus
    children_bringing: List[str] = []

    @field_validator("status")
    @classmethod
    def status_is_a_response(cls, v: RsvpStatus) -> RsvpStatus:
        if v == RsvpStatus.PENDING:
            raise ValueError("RSVP must be going, maybe or declined")
        return v


class InviteRequest(BaseModel):
    user_ids: List[str] = Field(min_length=1)


class MessageCreate(BaseModel):
    message: str = Field(max_length=2000)

    @field_validator("message")
    @classmethod
    def message_required(cls, v: str) -> str:
        return _not_blank(v, "Message")


class ThreadClose(BaseModel):
    status: ThreadStatus
    reason: Optional[str] = None

    @field_validator("status")
    @classmethod
    def status_is_closing(cls, v: ThreadStatus) -> ThreadStatus:
        if v not in (ThreadStatus.COMPLETED, ThreadStatus.CANCELLED):
            raise ValueError("A plan can only be closed as completed or cancelled")
        return v


class ThreadResponse(BaseModel):
    id: str
    created_by: str
    activity_name: str
    provider_id: Optional[str] = None
    provider_name: Optional[str] = None
    provider_url: Optional[str] = None
    status: ThreadStatus
    scheduled_date: Optional[datetime] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ParticipantResponse(BaseModel):
    id: str
    thread_id: str
    user_id: str
    role: ParticipantRole
    rsvp_status: RsvpStatus
    children_bringing: List[str] = []
    invited_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    profile: Optional[ProfileSummary] = None

    class Config:
        from_attributes = True


class ProposalResponse(BaseModel):
    id: str
    thread_id: str
    proposed_by: str
    proposed_date: datetime
    notes: Optional[str] = None
    status: ProposalStatus
    created_at: Optional[datetime] = None
    proposer_name: Optional[str] = None

    class Config:
        from_attributes = True


class EventResponse(BaseModel):
    id: str
    thread_id: str
    user_id: str
    event_type: ThreadEventType
    payload: Dict[str, Any] = {}
    created_at: Optional[datetime] = None
    user_name: Optional[str] = None

    @field_validator("payload", mode="before")
    @classmethod
    def payload_defaults_to_empty(cls, v):
        return v or {}

    class Config:
        from_attributes = True


class RsvpSummary(BaseModel):
    going: int = 0
    maybe: int = 0
    declined: int = 0
    pending: int = 0


class ThreadWithDetails(ThreadResponse):
    participants: List[ParticipantResponse] = []
    proposals: List[ProposalResponse] = []
    events: List[EventResponse] = []
    organizer_name: Optional[str] = None
    rsvp_summary: RsvpSummary = Field(default_factory=RsvpSummary)


class CoordinationFeed(BaseModel):
    planning: List[ThreadWithDetails] = []
    scheduled: List[ThreadWithDetails] = []
    past: List[ThreadWithDetails] = []
    needs_response: List[ThreadWithDetails] = []
