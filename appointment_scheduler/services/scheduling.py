"""Scheduling form - validate, upload the optional audio message, create"""
import datetime
import logging
from typing import Optional, Tuple

from ..core.config import settings
from ..core.errors import NotAuthenticatedError, ValidationError
from ..core.session import IdentitySession
from ..schemas.appointment import AppointmentDraft, AudioAttachment, NewAppointment
from .storage import generate_audio_key

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("title", "description", "date", "time", "counterparty_id")


class SchedulingForm:
    def __init__(
        self,
        session: IdentitySession,
        repository,
        directory,
        object_store,
        max_audio_bytes: Optional[int] = None
    ):
        self.session = session
        self.repository = repository
        self.directory = directory
        self.object_store = object_store
        self.max_audio_bytes = max_audio_bytes or settings.MAX_AUDIO_BYTES

    async def submit(
        self,
        draft: AppointmentDraft,
        attachment: Optional[AudioAttachment] = None
    ) -> str:
        """
        Create a pending appointment from the form and return its id.

        Everything that can be checked locally is checked before the store is
        touched. The attachment is uploaded before the record is written, so
        a failed upload never leaves an appointment behind.
        """
        caller = self.session.principal
        if caller is None:
            raise NotAuthenticatedError()

        values = {name: (getattr(draft, name) or "").strip() for name in REQUIRED_FIELDS}
        if not all(values.values()):
            raise ValidationError("All fields are required.")
        values["date"], values["time"] = self._normalize_schedule(values["date"], values["time"])
        if values["counterparty_id"] == caller.id:
            raise ValidationError("You cannot schedule an appointment with yourself.")
        if attachment is not None:
            self._check_attachment(attachment)

        counterparty = await self.directory.select(caller.id, values["counterparty_id"])

        audio_url = None
        if attachment is not None:
            key = generate_audio_key(attachment.filename, attachment.content_type)
            audio_url = await self.object_store.put(key, attachment.data, attachment.content_type)
            logger.info(f"Uploaded audio message {key} ({attachment.size} bytes)")

        appointment_id = await self.repository.create(NewAppointment(
            title=values["title"],
            description=values["description"],
            date=values["date"],
            time=values["time"],
            scheduler_id=caller.id,
            counterparty_id=counterparty.id,
            audio_url=audio_url,
        ))
        return appointment_id

    def _normalize_schedule(self, date: str, time: str) -> Tuple[str, str]:
        """
        Parse the date and time and return them as YYYY-MM-DD and HH:MM[:SS].

        Every accepted ISO spelling maps to one form, which sorts
        chronologically as a plain string.
        """
        try:
            parsed_date = datetime.date.fromisoformat(date)
            parsed_time = datetime.time.fromisoformat(time)
        except ValueError:
            raise ValidationError("Please enter a valid date and time.")
        if parsed_time.tzinfo is not None or parsed_time.microsecond:
            raise ValidationError("Please enter a valid date and time.")

        timespec = "seconds" if parsed_time.second else "minutes"
        return parsed_date.isoformat(), parsed_time.isoformat(timespec=timespec)

    def _check_attachment(self, attachment: AudioAttachment):
        if not (attachment.content_type or "").startswith("audio/"):
            raise ValidationError("Only audio files can be attached.")
        if attachment.size == 0:
            raise ValidationError("The audio message is empty.")
        if attachment.size > self.max_audio_bytes:
            limit_kib = self.max_audio_bytes // 1024
            raise ValidationError(f"The audio message must be {limit_kib} KB or smaller.")
