from datetime import datetime

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from typing import List, Optional

from ...api.deps import get_lifecycle_engine, get_scheduling_form
from ...core.config import settings
from ...schemas.appointment import (
    AppointmentCreated, AppointmentDraft, AppointmentResponse, AppointmentView,
    AudioAttachment, RespondRequest, TimeWindow
)
from ...services.lifecycle import AppointmentLifecycleEngine
from ...services.scheduling import SchedulingForm

router = APIRouter(prefix="/appointments", tags=["Appointments"])

def _response(
    engine: AppointmentLifecycleEngine,
    view: AppointmentView,
    now: datetime
) -> AppointmentResponse:
    return AppointmentResponse(
        **view.model_dump(),
        legal_actions=sorted(engine.legal_actions_for(view, now), key=lambda action: action.value),
        busy=engine.is_busy(view.id),
    )

@router.post("", response_model=AppointmentCreated, status_code=status.HTTP_201_CREATED)
async def create_appointment(
    title: str = Form(""),
    description: str = Form(""),
    date: str = Form(""),
    time: str = Form(""),
    counterparty_id: str = Form(""),
    audio: Optional[UploadFile] = File(None),
    form: SchedulingForm = Depends(get_scheduling_form)
):
    """Propose an appointment, optionally with a short audio message."""
    attachment = None
    if audio is not None and audio.filename:
        # One byte past the limit is enough to reject an oversized upload
        data = await audio.read(settings.MAX_AUDIO_BYTES + 1)
        attachment = AudioAttachment(
            filename=audio.filename,
            content_type=audio.content_type or "",
            data=data
        )

    draft = AppointmentDraft(
        title=title,
        description=description,
        date=date,
        time=time,
        counterparty_id=counterparty_id
    )
    appointment_id = await form.submit(draft, attachment)
    return AppointmentCreated(id=appointment_id)

@router.get("", response_model=List[AppointmentResponse])
async def list_appointments(
    window: TimeWindow = TimeWindow.ALL,
    search: str = "",
    engine: AppointmentLifecycleEngine = Depends(get_lifecycle_engine)
):
    """Appointments the caller scheduled or was invited to, by date and time."""
    await engine.refresh()
    now = engine.clock()
    return [_response(engine, view, now) for view in engine.visible(window, search, now)]

@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: str,
    engine: AppointmentLifecycleEngine = Depends(get_lifecycle_engine)
):
    """Scheduler cancels an upcoming appointment."""
    await engine.refresh()
    view = await engine.cancel(appointment_id)
    return _response(engine, view, engine.clock())

@router.post("/{appointment_id}/respond", response_model=AppointmentResponse)
async def respond_to_appointment(
    appointment_id: str,
    response_data: RespondRequest,
    engine: AppointmentLifecycleEngine = Depends(get_lifecycle_engine)
):
    """Counterparty accepts or declines a pending appointment."""
    await engine.refresh()
    view = await engine.respond(appointment_id, response_data.decision)
    return _response(engine, view, engine.clock())
