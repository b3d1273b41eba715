from pydantic import BaseModel, ConfigDict
from datetime import datetime
from enum import Enum
from typing import List, Optional

from ..models.appointment import AppointmentStatus


class Role(str, Enum):
    SCHEDULER = "scheduler"
    COUNTERPARTY = "counterparty"


class Action(str, Enum):
    CANCEL = "cancel"
    ACCEPT = "accept"
    DECLINE = "decline"


class TimeWindow(str, Enum):
    ALL = "all"
    UPCOMING = "upcoming"
    PAST = "past"


class AppointmentDraft(BaseModel):
    """Raw form input; emptiness is checked by the scheduling form."""

    title: str = ""
    description: str = ""
    date: str = ""
    time: str = ""
    counterparty_id: str = ""


class AudioAttachment(BaseModel):
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


class NewAppointment(BaseModel):
    title: str
    description: str
    date: str
    time: str
    scheduler_id: str
    counterparty_id: str
    status: AppointmentStatus = AppointmentStatus.PENDING
    audio_url: Optional[str] = None


class AppointmentRecord(BaseModel):
    """An appointment as stored, detached from the database session."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    description: str
    date: str
    time: str
    scheduler_id: str
    counterparty_id: str
    status: AppointmentStatus = AppointmentStatus.PENDING
    created_at: Optional[datetime] = None
    audio_url: Optional[str] = None


class AppointmentView(AppointmentRecord):
    """A record as seen by one of its two parties."""

    role: Role
    scheduler_display_name: str
    counterparty_display_name: str
    scheduled_at: Optional[datetime] = None


class AppointmentResponse(AppointmentView):
    legal_actions: List[Action] = []
    busy: bool = False


class AppointmentCreated(BaseModel):
    id: str


class RespondRequest(BaseModel):
    decision: str
