"""
Appointment lifecycle: who sees which appointment, and which status
transitions each party may issue.

An appointment is visible to its scheduler and its counterparty only. Status
moves one way:

    pending --(counterparty)--> accepted
    pending --(counterparty)--> declined
    pending, accepted --(scheduler, before the scheduled instant)--> cancelled

declined and cancelled are terminal. Records are never deleted.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, FrozenSet, Iterable, List, Optional, Set, Union

from ..core.config import settings
from ..core.errors import (
    ActionInProgressError, AppointmentNotFoundError, AuthorizationError,
    NotAuthenticatedError, ReadError, ValidationError, WriteError
)
from ..core.session import IdentitySession
from ..models.appointment import AppointmentStatus
from ..schemas.appointment import (
    Action, AppointmentRecord, AppointmentView, Role, TimeWindow
)
from ..schemas.user import Principal
from .directory import UNKNOWN_SCHEDULER, UNKNOWN_USER, label_or_fallback

logger = logging.getLogger(__name__)

NO_ACTIONS: FrozenSet[Action] = frozenset()
CANCELLABLE_STATUSES = {AppointmentStatus.PENDING, AppointmentStatus.ACCEPTED}
DECISIONS = {
    AppointmentStatus.ACCEPTED: Action.ACCEPT,
    AppointmentStatus.DECLINED: Action.DECLINE,
}


def scheduled_instant(date: str, time: str) -> Optional[datetime]:
    """Date and time as one naive local datetime, or None if they don't parse."""
    try:
        instant = datetime.fromisoformat(f"{date}T{time}")
    except (TypeError, ValueError):
        return None
    if instant.tzinfo is not None:
        return None
    return instant


def role_for(caller_id: str, record: AppointmentRecord) -> Role:
    if record.scheduler_id == caller_id:
        return Role.SCHEDULER
    return Role.COUNTERPARTY


def legal_actions(
    role: Role,
    status: AppointmentStatus,
    scheduled_at: Optional[datetime],
    now: datetime
) -> FrozenSet[Action]:
    """Actions a party may take on an appointment at this moment."""
    if role == Role.SCHEDULER:
        if status in CANCELLABLE_STATUSES and scheduled_at is not None and scheduled_at > now:
            return frozenset({Action.CANCEL})
        return NO_ACTIONS

    if status == AppointmentStatus.PENDING:
        return frozenset({Action.ACCEPT, Action.DECLINE})
    return NO_ACTIONS


def in_window(view: AppointmentView, window: TimeWindow, now: datetime) -> bool:
    if window == TimeWindow.ALL:
        return True
    # Unparseable date/time is neither upcoming nor past
    if view.scheduled_at is None:
        return False
    if window == TimeWindow.UPCOMING:
        return view.scheduled_at > now
    return view.scheduled_at <= now


def matches_search(view: AppointmentView, search: str) -> bool:
    if not search:
        return True
    term = search.lower()
    return term in view.title.lower() or term in view.description.lower()


def filter_appointments(
    views: Iterable[AppointmentView],
    window: TimeWindow = TimeWindow.ALL,
    search: str = "",
    now: Optional[datetime] = None
) -> List[AppointmentView]:
    """Subset of views inside the time window AND matching the search term."""
    now = now or datetime.now()
    window = TimeWindow(window)
    return [
        view for view in views
        if in_window(view, window, now) and matches_search(view, search)
    ]


class AppointmentLifecycleEngine:
    """
    Reconciled appointment list for the session's principal.

    Holds the last successfully refreshed view and the ids with an action in
    flight. The caller decides when to refresh; every status transition
    refreshes on its own afterwards.
    """

    def __init__(
        self,
        session: IdentitySession,
        repository,
        lookup,
        clock: Callable[[], datetime] = datetime.now,
        timeout: Optional[float] = None
    ):
        self.session = session
        self.repository = repository
        self.lookup = lookup
        self.clock = clock
        self.timeout = timeout if timeout is not None else settings.STORE_TIMEOUT_SECONDS
        self._appointments: List[AppointmentView] = []
        self._busy: Set[str] = set()
        self._stalled = False
        self._unsubscribe = session.subscribe(self._on_principal_changed)

    @property
    def appointments(self) -> List[AppointmentView]:
        return list(self._appointments)

    @property
    def busy(self) -> FrozenSet[str]:
        return frozenset(self._busy)

    def is_busy(self, appointment_id: str) -> bool:
        return appointment_id in self._busy

    def close(self):
        self._unsubscribe()

    async def refresh(self) -> List[AppointmentView]:
        """Re-read both sides of the caller's appointments and rebuild the view."""
        caller = self._caller()
        try:
            scheduled = await self._bounded(self.repository.list_by_scheduler, ReadError, caller.id)
            proposed = await self._bounded(self.repository.list_by_counterparty, ReadError, caller.id)
        except ReadError:
            logger.error(
                f"Refresh failed for {caller.id}, keeping {len(self._appointments)} appointments"
            )
            raise

        # Disjoint while scheduler_id != counterparty_id. Relaxing that needs a de-duplication by id here.
        records = scheduled + proposed
        principal_ids = {
            principal_id
            for record in records
            for principal_id in (record.scheduler_id, record.counterparty_id)
        }
        try:
            names = await self._bounded(self.lookup.resolve, ReadError, principal_ids)
        except ReadError:
            logger.warning(f"Display names unavailable for {caller.id}, using fallback labels")
            names = {}
        views = [self._labelled(caller, record, names) for record in records]

        if self.session.principal != caller:
            logger.info("Principal changed during refresh, discarding result")
            return self.appointments

        self._appointments = sorted(views, key=lambda view: (view.date, view.time))
        logger.debug(f"Refreshed {len(self._appointments)} appointments for {caller.id}")
        return self.appointments

    def visible(
        self,
        window: TimeWindow = TimeWindow.ALL,
        search: str = "",
        now: Optional[datetime] = None
    ) -> List[AppointmentView]:
        """Filtered view; "now" is sampled once per call unless given."""
        return filter_appointments(self._appointments, window, search, now or self.clock())

    def get(self, appointment_id: str) -> AppointmentView:
        for view in self._appointments:
            if view.id == appointment_id:
                return view
        raise AppointmentNotFoundError()

    def legal_actions_for(self, view: AppointmentView, now: Optional[datetime] = None) -> FrozenSet[Action]:
        return legal_actions(view.role, view.status, view.scheduled_at, now or self.clock())

    async def cancel(self, appointment_id: str) -> AppointmentView:
        """Scheduler withdraws a pending or accepted appointment that hasn't happened yet."""
        view = self.get(appointment_id)
        self._ensure_allowed(view, Action.CANCEL)
        return await self._transition(view, AppointmentStatus.CANCELLED)

    async def respond(
        self,
        appointment_id: str,
        decision: Union[AppointmentStatus, str]
    ) -> AppointmentView:
        """Counterparty accepts or declines a pending appointment."""
        try:
            status = AppointmentStatus(decision)
        except ValueError:
            status = None
        if status not in DECISIONS:
            raise ValidationError("Decision must be 'accepted' or 'declined'.")

        view = self.get(appointment_id)
        self._ensure_allowed(view, DECISIONS[status])
        return await self._transition(view, status)

    def _caller(self) -> Principal:
        principal = self.session.principal
        if self.session.loading or principal is None:
            raise NotAuthenticatedError()
        return principal

    def _ensure_allowed(self, view: AppointmentView, action: Action):
        if action not in self.legal_actions_for(view):
            logger.warning(
                f"Rejected {action.value} on {view.id}: "
                f"role={view.role.value} status={view.status.value}"
            )
            raise AuthorizationError(f"You cannot {action.value} this appointment.")

    async def _transition(self, view: AppointmentView, status: AppointmentStatus) -> AppointmentView:
        if view.id in self._busy:
            raise ActionInProgressError()

        self._busy.add(view.id)
        try:
            await self._bounded(self.repository.set_status, WriteError, view.id, status)
        except WriteError:
            await self._refresh_after_failure()
            raise
        finally:
            self._busy.discard(view.id)

        logger.info(f"Appointment {view.id} is now {status.value}")
        await self.refresh()
        return self.get(view.id)

    async def _refresh_after_failure(self):
        try:
            await self.refresh()
        except ReadError as e:
            logger.warning(f"Refresh after a failed action also failed: {e}")

    def _labelled(self, caller: Principal, record: AppointmentRecord, names) -> AppointmentView:
        return AppointmentView(
            **record.model_dump(),
            role=role_for(caller.id, record),
            scheduler_display_name=label_or_fallback(names, record.scheduler_id, UNKNOWN_SCHEDULER),
            counterparty_display_name=label_or_fallback(names, record.counterparty_id, UNKNOWN_USER),
            scheduled_at=scheduled_instant(record.date, record.time),
        )

    async def _bounded(self, call, error_cls, *args):
        """
        Run one store call under the timeout.

        A timed-out call may still be running against the store, so the
        engine stops issuing store calls for the rest of its life.
        """
        if self._stalled:
            raise error_cls("A previous request is still running. Please try again.")
        try:
            return await asyncio.wait_for(call(*args), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            self._stalled = True
            logger.error(f"Store request timed out after {self.timeout}s")
            raise error_cls("The request timed out. Please try again.") from e

    def _on_principal_changed(self, principal: Optional[Principal]):
        self._appointments = []
        self._busy.clear()
