"""Appointment repository - data access boundary for appointment records"""
import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..core.errors import ReadError, WriteError
from ..models.appointment import Appointment, AppointmentStatus
from ..schemas.appointment import AppointmentRecord, NewAppointment

logger = logging.getLogger(__name__)


class AppointmentRepository:
    """
    Create, list and update appointments in the database.

    Store failures leave this class as ReadError or WriteError. No
    authorization happens here; callers gate actions before writing.
    """

    def __init__(self, db: Session):
        self.db = db

    async def create(self, new_appointment: NewAppointment) -> str:
        """Insert a new appointment and return its id."""
        return await self._write(self._create, new_appointment)

    async def list_by_scheduler(self, principal_id: str) -> List[AppointmentRecord]:
        """Appointments created by the principal, ordered by date then time."""
        return await self._read(self._list_where, Appointment.scheduler_id == principal_id)

    async def list_by_counterparty(self, principal_id: str) -> List[AppointmentRecord]:
        """Appointments proposed to the principal, ordered by date then time."""
        return await self._read(self._list_where, Appointment.counterparty_id == principal_id)

    async def get(self, appointment_id: str) -> Optional[AppointmentRecord]:
        return await self._read(self._get, appointment_id)

    async def set_status(self, appointment_id: str, status: AppointmentStatus) -> None:
        await self._write(self._set_status, appointment_id, status)

    # Synchronous bodies, run on the threadpool

    def _create(self, new_appointment: NewAppointment) -> str:
        appointment = Appointment(**new_appointment.model_dump())
        self.db.add(appointment)
        self.db.commit()
        self.db.refresh(appointment)
        logger.info(
            f"Appointment {appointment.id} created by {appointment.scheduler_id} "
            f"with {appointment.counterparty_id}"
        )
        return appointment.id

    def _list_where(self, criterion) -> List[AppointmentRecord]:
        rows = (
            self.db.query(Appointment)
            .filter(criterion)
            .order_by(Appointment.date.asc(), Appointment.time.asc())
            .all()
        )
        return [AppointmentRecord.model_validate(row) for row in rows]

    def _get(self, appointment_id: str) -> Optional[AppointmentRecord]:
        row = self.db.query(Appointment).filter(Appointment.id == appointment_id).first()
        return AppointmentRecord.model_validate(row) if row else None

    def _set_status(self, appointment_id: str, status: AppointmentStatus) -> None:
        appointment = self.db.query(Appointment).filter(Appointment.id == appointment_id).first()
        if not appointment:
            raise WriteError("Appointment not found.")
        appointment.status = status
        self.db.commit()
        logger.info(f"Appointment {appointment_id} set to {status.value}")

    async def _read(self, fn, *args):
        try:
            return await run_in_threadpool(fn, *args)
        except SQLAlchemyError as e:
            logger.error(f"Appointment store read failed: {e}")
            raise ReadError() from e

    async def _write(self, fn, *args):
        try:
            return await run_in_threadpool(self._in_transaction, fn, *args)
        except SQLAlchemyError as e:
            logger.error(f"Appointment store write failed: {e}")
            raise WriteError() from e

    def _in_transaction(self, fn, *args):
        # Rolls back on the worker thread, even when the awaiting call was cancelled
        try:
            return fn(*args)
        except SQLAlchemyError:
            self.db.rollback()
            raise
