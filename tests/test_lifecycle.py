import asyncio
from datetime import datetime

import pytest

from appointment_scheduler.core.errors import (
    ActionInProgressError, AppointmentNotFoundError, AuthorizationError,
    NotAuthenticatedError, ReadError, ValidationError, WriteError
)
from appointment_scheduler.core.session import IdentitySession
from appointment_scheduler.models.appointment import AppointmentStatus
from appointment_scheduler.schemas.appointment import (
    Action, AppointmentRecord, Role, TimeWindow
)
from appointment_scheduler.schemas.user import Principal
from appointment_scheduler.services.lifecycle import (
    AppointmentLifecycleEngine, filter_appointments, legal_actions, scheduled_instant
)

NOW = datetime(2030, 6, 15, 12, 0)
ALICE = Principal(id="u1", display_name="alice")
BOB = Principal(id="u2", display_name="bob")
CAROL = Principal(id="u3", display_name="carol")


def record(id, scheduler, counterparty, date="2030-06-16", time="10:00",
           status=AppointmentStatus.PENDING, title="Sync", description="weekly sync"):
    return AppointmentRecord(
        id=id, title=title, description=description, date=date, time=time,
        scheduler_id=scheduler.id, counterparty_id=counterparty.id, status=status
    )


class FakeRepository:
    def __init__(self, *records):
        self.records = {r.id: r for r in records}
        self.fail_reads = False
        self.fail_writes = False
        self.write_delay = 0
        self.read_delay = 0
        self.reads = 0
        self.status_writes = []

    async def list_by_scheduler(self, principal_id):
        return await self._where(lambda r: r.scheduler_id == principal_id)

    async def list_by_counterparty(self, principal_id):
        return await self._where(lambda r: r.counterparty_id == principal_id)

    async def set_status(self, appointment_id, status):
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        if self.fail_writes:
            raise WriteError()
        self.status_writes.append((appointment_id, status))
        self.records[appointment_id] = self.records[appointment_id].model_copy(update={"status": status})

    async def _where(self, predicate):
        self.reads += 1
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        if self.fail_reads:
            raise ReadError()
        return sorted((r for r in self.records.values() if predicate(r)), key=lambda r: (r.date, r.time))


class FakeLookup:
    def __init__(self, *principals):
        self.names = {p.id: p.display_name for p in principals}
        self.batches = []

    async def resolve(self, principal_ids):
        principal_ids = set(principal_ids)
        self.batches.append(principal_ids)
        return {i: self.names[i] for i in principal_ids if i in self.names}


def make_engine(principal, repository, lookup=None, timeout=1.0):
    session = IdentitySession.for_principal(principal)
    lookup = lookup or FakeLookup(ALICE, BOB, CAROL)
    return AppointmentLifecycleEngine(session, repository, lookup, clock=lambda: NOW, timeout=timeout)


def run(coro):
    return asyncio.run(coro)


class TestLegalActions:

    @pytest.mark.parametrize("status", [AppointmentStatus.PENDING, AppointmentStatus.ACCEPTED])
    def test_scheduler_can_cancel_future(self, status):
        future = datetime(2030, 6, 16, 10, 0)
        assert legal_actions(Role.SCHEDULER, status, future, NOW) == {Action.CANCEL}

    @pytest.mark.parametrize("status", list(AppointmentStatus))
    def test_scheduler_cannot_act_on_past(self, status):
        past = datetime(2030, 6, 14, 9, 0)
        assert legal_actions(Role.SCHEDULER, status, past, NOW) == set()

    def test_scheduler_cannot_act_at_the_scheduled_instant(self):
        assert legal_actions(Role.SCHEDULER, AppointmentStatus.PENDING, NOW, NOW) == set()

    @pytest.mark.parametrize("status", [AppointmentStatus.DECLINED, AppointmentStatus.CANCELLED])
    def test_scheduler_terminal_statuses(self, status):
        future = datetime(2030, 6, 16, 10, 0)
        assert legal_actions(Role.SCHEDULER, status, future, NOW) == set()

    @pytest.mark.parametrize("scheduled_at", [datetime(2030, 6, 16), datetime(2030, 6, 1), None])
    def test_counterparty_pending_any_time(self, scheduled_at):
        actions = legal_actions(Role.COUNTERPARTY, AppointmentStatus.PENDING, scheduled_at, NOW)
        assert actions == {Action.ACCEPT, Action.DECLINE}

    @pytest.mark.parametrize("status", [
        AppointmentStatus.ACCEPTED, AppointmentStatus.DECLINED, AppointmentStatus.CANCELLED
    ])
    def test_counterparty_settled_statuses(self, status):
        future = datetime(2030, 6, 16, 10, 0)
        assert legal_actions(Role.COUNTERPARTY, status, future, NOW) == set()

    def test_scheduled_instant(self):
        assert scheduled_instant("2030-06-16", "10:00") == datetime(2030, 6, 16, 10, 0)
        assert scheduled_instant("2030-06-16", "10:00:30") == datetime(2030, 6, 16, 10, 0, 30)
        assert scheduled_instant("someday", "10:00") is None
        assert scheduled_instant("2030-06-16", "10:00+02:00") is None


class TestRefresh:

    def test_merges_both_sides_sorted_with_roles(self):
        repository = FakeRepository(
            record("a1", ALICE, BOB, date="2030-06-20"),
            record("a2", BOB, ALICE, date="2030-06-18"),
            record("a3", ALICE, CAROL, date="2030-06-18", time="08:30"),
            record("a4", BOB, CAROL),
        )
        engine = make_engine(ALICE, repository)

        views = run(engine.refresh())

        assert [v.id for v in views] == ["a3", "a2", "a1"]
        assert {v.id: v.role for v in views} == {
            "a1": Role.SCHEDULER, "a2": Role.COUNTERPARTY, "a3": Role.SCHEDULER
        }
        a2 = engine.get("a2")
        assert a2.scheduler_display_name == "bob"
        assert a2.counterparty_display_name == "alice"

    def test_only_parties_see_an_appointment(self):
        repository = FakeRepository(record("a1", ALICE, BOB))

        assert [v.id for v in run(make_engine(ALICE, repository).refresh())] == ["a1"]
        assert [v.id for v in run(make_engine(BOB, repository).refresh())] == ["a1"]
        assert run(make_engine(CAROL, repository).refresh()) == []

    def test_missing_principals_get_sentinel_labels(self):
        repository = FakeRepository(record("a1", ALICE, BOB), record("a2", CAROL, ALICE))
        engine = make_engine(ALICE, repository, lookup=FakeLookup(ALICE))

        run(engine.refresh())

        assert engine.get("a1").counterparty_display_name == "Unknown User"
        assert engine.get("a2").scheduler_display_name == "Unknown Scheduler"

    def test_failed_refresh_keeps_previous_view(self):
        repository = FakeRepository(record("a1", ALICE, BOB))
        engine = make_engine(ALICE, repository)
        run(engine.refresh())

        repository.fail_reads = True
        with pytest.raises(ReadError):
            run(engine.refresh())

        assert [v.id for v in engine.appointments] == ["a1"]

    def test_read_timeout_keeps_previous_view(self):
        repository = FakeRepository(record("a1", ALICE, BOB))
        engine = make_engine(ALICE, repository, timeout=0.01)
        run(engine.refresh())

        repository.records["a2"] = record("a2", ALICE, CAROL)
        repository.read_delay = 1
        with pytest.raises(ReadError):
            run(engine.refresh())

        assert [v.id for v in engine.appointments] == ["a1"]

    def test_labels_are_resolved_in_one_batch(self):
        repository = FakeRepository(
            record("a1", ALICE, BOB),
            record("a2", CAROL, ALICE),
            record("a3", ALICE, BOB, date="2030-06-17"),
        )
        lookup = FakeLookup(ALICE, BOB, CAROL)
        engine = make_engine(ALICE, repository, lookup=lookup)

        run(engine.refresh())

        assert lookup.batches == [{"u1", "u2", "u3"}]
        assert engine.get("a2").scheduler_display_name == "carol"

    def test_requires_signed_in_principal(self):
        session = IdentitySession()
        engine = AppointmentLifecycleEngine(session, FakeRepository(), FakeLookup())

        with pytest.raises(NotAuthenticatedError):
            run(engine.refresh())

    def test_sign_out_clears_view(self):
        repository = FakeRepository(record("a1", ALICE, BOB))
        engine = make_engine(ALICE, repository)
        run(engine.refresh())

        engine.session.sign_out()

        assert engine.appointments == []
        with pytest.raises(NotAuthenticatedError):
            run(engine.refresh())


class TestFiltering:

    def setup_method(self):
        repository = FakeRepository(
            record("past", ALICE, CAROL, date="2030-06-14", time="09:00", title="Retro", description="Sprint retro"),
            record("sync", ALICE, BOB, date="2030-06-16", title="Sync", description="weekly sync"),
            record("lunch", BOB, ALICE, date="2030-06-17", title="Lunch", description="Team lunch"),
            record("now", ALICE, BOB, date="2030-06-15", time="12:00", title="Standup", description="daily"),
        )
        self.engine = make_engine(ALICE, repository)
        run(self.engine.refresh())

    def test_all_without_search_is_unchanged(self):
        assert self.engine.visible(TimeWindow.ALL, "") == self.engine.appointments

    def test_upcoming_and_past(self):
        assert [v.id for v in self.engine.visible(TimeWindow.UPCOMING)] == ["sync", "lunch"]
        assert [v.id for v in self.engine.visible(TimeWindow.PAST)] == ["past", "now"]

    def test_search_is_case_insensitive_on_title(self):
        assert [v.id for v in self.engine.visible(search="sync")] == ["sync"]
        assert [v.id for v in self.engine.visible(search="LUNCH")] == ["lunch"]

    def test_search_matches_description(self):
        assert [v.id for v in self.engine.visible(search="retro")] == ["past"]
        assert [v.id for v in self.engine.visible(search="Daily")] == ["now"]

    def test_window_and_search_compose(self):
        assert [v.id for v in self.engine.visible(TimeWindow.PAST, "sync")] == []
        assert [v.id for v in self.engine.visible(TimeWindow.UPCOMING, "team")] == ["lunch"]

    def test_unparseable_schedule_is_in_no_window(self):
        views = run(make_engine(ALICE, FakeRepository(
            record("bad", ALICE, BOB, date="soon")
        )).refresh())

        assert filter_appointments(views, TimeWindow.ALL, now=NOW) == views
        assert filter_appointments(views, TimeWindow.UPCOMING, now=NOW) == []
        assert filter_appointments(views, TimeWindow.PAST, now=NOW) == []


class TestTransitions:

    def test_counterparty_accepts(self):
        repository = FakeRepository(record("a1", ALICE, BOB))
        bob = make_engine(BOB, repository)
        run(bob.refresh())
        assert bob.legal_actions_for(bob.get("a1")) == {Action.ACCEPT, Action.DECLINE}

        view = run(bob.respond("a1", "accepted"))

        assert view.status == AppointmentStatus.ACCEPTED
        assert repository.status_writes == [("a1", AppointmentStatus.ACCEPTED)]
        assert bob.legal_actions_for(view) == set()
        assert not bob.is_busy("a1")

    def test_counterparty_declines(self):
        repository = FakeRepository(record("a1", ALICE, BOB))
        bob = make_engine(BOB, repository)
        run(bob.refresh())

        view = run(bob.respond("a1", AppointmentStatus.DECLINED))

        assert view.status == AppointmentStatus.DECLINED

    def test_scheduler_cancels_upcoming(self):
        repository = FakeRepository(record("a1", ALICE, BOB, status=AppointmentStatus.ACCEPTED))
        alice = make_engine(ALICE, repository)
        run(alice.refresh())

        view = run(alice.cancel("a1"))

        assert view.status == AppointmentStatus.CANCELLED
        assert alice.legal_actions_for(view) == set()

    def test_counterparty_cannot_cancel(self):
        repository = FakeRepository(record("a1", ALICE, BOB))
        bob = make_engine(BOB, repository)
        run(bob.refresh())

        with pytest.raises(AuthorizationError):
            run(bob.cancel("a1"))
        assert repository.status_writes == []

    def test_scheduler_cannot_cancel_past(self):
        repository = FakeRepository(record("a1", ALICE, CAROL, date="2030-06-14", time="09:00"))
        alice = make_engine(ALICE, repository)
        run(alice.refresh())

        with pytest.raises(AuthorizationError):
            run(alice.cancel("a1"))
        assert repository.status_writes == []

    def test_cancel_twice_is_rejected(self):
        repository = FakeRepository(record("a1", ALICE, BOB))
        alice = make_engine(ALICE, repository)
        run(alice.refresh())
        run(alice.cancel("a1"))

        with pytest.raises(AuthorizationError):
            run(alice.cancel("a1"))
        assert len(repository.status_writes) == 1

    def test_scheduler_cannot_respond(self):
        repository = FakeRepository(record("a1", ALICE, BOB))
        alice = make_engine(ALICE, repository)
        run(alice.refresh())

        with pytest.raises(AuthorizationError):
            run(alice.respond("a1", "accepted"))
        assert repository.status_writes == []

    def test_respond_to_settled_appointment_is_rejected(self):
        repository = FakeRepository(record("a1", ALICE, BOB, status=AppointmentStatus.CANCELLED))
        bob = make_engine(BOB, repository)
        run(bob.refresh())

        with pytest.raises(AuthorizationError):
            run(bob.respond("a1", "declined"))
        assert repository.status_writes == []

    @pytest.mark.parametrize("decision", ["pending", "cancelled", "maybe", ""])
    def test_respond_requires_a_decision(self, decision):
        repository = FakeRepository(record("a1", ALICE, BOB))
        bob = make_engine(BOB, repository)
        run(bob.refresh())

        with pytest.raises(ValidationError):
            run(bob.respond("a1", decision))

    def test_unknown_appointment(self):
        repository = FakeRepository(record("a1", ALICE, BOB))
        carol = make_engine(CAROL, repository)
        run(carol.refresh())

        with pytest.raises(AppointmentNotFoundError):
            run(carol.cancel("a1"))

    def test_failed_write_clears_busy_and_refreshes(self):
        repository = FakeRepository(record("a1", ALICE, BOB))
        bob = make_engine(BOB, repository)
        run(bob.refresh())

        repository.fail_writes = True
        repository.records["a2"] = record("a2", CAROL, BOB)
        with pytest.raises(WriteError):
            run(bob.respond("a1", "accepted"))

        assert not bob.is_busy("a1")
        # the refresh after the failure picked up the new record
        assert [v.id for v in bob.appointments] == ["a1", "a2"]
        assert bob.get("a1").status == AppointmentStatus.PENDING

    def test_stalled_write_times_out(self):
        repository = FakeRepository(record("a1", ALICE, BOB))
        bob = make_engine(BOB, repository, timeout=0.01)
        run(bob.refresh())

        repository.write_delay = 1
        with pytest.raises(WriteError):
            run(bob.respond("a1", "accepted"))
        assert not bob.is_busy("a1")

    def test_one_action_per_appointment_at_a_time(self):
        repository = FakeRepository(
            record("a1", ALICE, BOB),
            record("a2", CAROL, BOB),
        )
        bob = make_engine(BOB, repository)
        repository.write_delay = 0.05

        async def scenario():
            await bob.refresh()
            first = asyncio.ensure_future(bob.respond("a1", "accepted"))
            await asyncio.sleep(0)
            assert bob.busy == {"a1"}
            with pytest.raises(ActionInProgressError):
                await bob.respond("a1", "declined")
            # a different appointment is not blocked
            await bob.respond("a2", "declined")
            await first

        run(scenario())

        assert bob.busy == set()
        assert bob.get("a1").status == AppointmentStatus.ACCEPTED
        assert bob.get("a2").status == AppointmentStatus.DECLINED

    def test_stalled_write_stops_further_store_calls(self):
        repository = FakeRepository(record("a1", ALICE, BOB))
        bob = make_engine(BOB, repository, timeout=0.01)
        run(bob.refresh())
        reads_before = repository.reads

        repository.write_delay = 1
        with pytest.raises(WriteError):
            run(bob.respond("a1", "accepted"))

        # the follow-up refresh did not touch the store behind the stalled write
        assert repository.reads == reads_before
        assert [v.id for v in bob.appointments] == ["a1"]
        with pytest.raises(ReadError):
            run(bob.refresh())
        assert repository.reads == reads_before


class TestClock:

    def test_one_now_for_filtering_and_actions(self):
        ticks = iter([datetime(2030, 6, 16, 9, 59), datetime(2030, 6, 16, 10, 1)])
        repository = FakeRepository(record("a1", ALICE, BOB))
        engine = AppointmentLifecycleEngine(
            IdentitySession.for_principal(ALICE), repository, FakeLookup(ALICE, BOB),
            clock=lambda: next(ticks)
        )
        run(engine.refresh())

        now = engine.clock()
        [view] = engine.visible(TimeWindow.UPCOMING, now=now)

        assert engine.legal_actions_for(view, now) == {Action.CANCEL}
        # a later sample would already be past the scheduled instant
        assert engine.legal_actions_for(view) == set()
