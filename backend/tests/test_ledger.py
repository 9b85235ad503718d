"""
Tests for the Reservation Ledger.

Covers:
- Atomic commit and the no-overlap invariant
- State machine guards
- Concurrent commits (threads)
- Unique-index and overlap-constraint backstops
- Lock registry cleanup
"""
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, time, timedelta

import pytest

from careslot.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from careslot.models.enums import ReservationStatus


MONDAY = date(2026, 3, 2)


def commit(ledger, start: time, end: time, provider_id="doc-1", slot_date=MONDAY, subject_id="patient-1"):
    return ledger.commit(
        provider_id=provider_id,
        subject_id=subject_id,
        linked_entity_id=f"consult-{subject_id}",
        slot_date=slot_date,
        start_time=start,
        end_time=end
    )


class TestCommit:

    @pytest.mark.unit
    def test_commit_creates_booked_reservation(self, ledger, mock_data):
        reservation = commit(ledger, time(10, 0), time(10, 15))

        assert reservation.status == ReservationStatus.BOOKED
        assert reservation.created_at is not None
        assert reservation.last_transition_at is not None
        assert mock_data["reservations"][0]["start_time"] == "10:00"
        assert mock_data["reservations"][0]["slot_date"] == "2026-03-02"

    @pytest.mark.unit
    def test_overlapping_commit_conflicts(self, ledger):
        first = commit(ledger, time(10, 0), time(10, 15))

        with pytest.raises(ConflictError) as exc_info:
            commit(ledger, time(10, 10), time(10, 25), subject_id="patient-2")

        assert exc_info.value.details["conflicting_reservation_id"] == first.id
        assert exc_info.value.details["retry_hint"] == "relist"
        assert exc_info.value.status_code == 409

    @pytest.mark.unit
    def test_adjacent_windows_do_not_conflict(self, ledger):
        commit(ledger, time(10, 0), time(10, 15))
        second = commit(ledger, time(10, 15), time(10, 30), subject_id="patient-2")

        assert second.start_time == time(10, 15)

    @pytest.mark.unit
    def test_other_provider_and_day_do_not_conflict(self, ledger):
        commit(ledger, time(10, 0), time(10, 15))
        commit(ledger, time(10, 0), time(10, 15), provider_id="doc-2")
        commit(ledger, time(10, 0), time(10, 15), slot_date=MONDAY + timedelta(days=1))

        assert len(ledger.list_active("doc-1", MONDAY, MONDAY + timedelta(days=1))) == 2

    @pytest.mark.unit
    def test_cancelled_window_can_be_rebooked(self, ledger):
        first = commit(ledger, time(10, 0), time(10, 15))
        ledger.cancel(first.id, "Patient request")

        second = commit(ledger, time(10, 0), time(10, 15), subject_id="patient-2")

        assert second.status == ReservationStatus.BOOKED

    @pytest.mark.unit
    def test_completed_window_still_blocks(self, ledger):
        first = commit(ledger, time(10, 0), time(10, 15))
        ledger.mark_completed(first.id)

        with pytest.raises(ConflictError):
            commit(ledger, time(10, 0), time(10, 15), subject_id="patient-2")

    @pytest.mark.edge
    @pytest.mark.parametrize("start,end", [
        (time(10, 0), time(10, 0)),
        (time(10, 15), time(10, 0)),
    ])
    def test_zero_or_negative_window_rejected(self, ledger, start, end):
        with pytest.raises(ValidationError):
            commit(ledger, start, end)

    @pytest.mark.edge
    def test_unique_index_backstop_maps_to_conflict(self, ledger, monkeypatch):
        """A duplicate that slips past the in-process check still surfaces as a conflict."""
        commit(ledger, time(10, 0), time(10, 15))
        monkeypatch.setattr(ledger, "_ensure_free", lambda *args: None)

        with pytest.raises(ConflictError):
            commit(ledger, time(10, 0), time(10, 15), subject_id="patient-2")

        assert len(ledger.list_active("doc-1", MONDAY)) == 1

    @pytest.mark.edge
    def test_overlap_constraint_backstop_maps_to_conflict(self, ledger, monkeypatch):
        """An overlapping window with a different start is rejected by the database too."""
        commit(ledger, time(10, 0), time(10, 30))
        monkeypatch.setattr(ledger, "_ensure_free", lambda *args: None)

        with pytest.raises(ConflictError):
            commit(ledger, time(10, 15), time(10, 45), subject_id="patient-2")

        assert len(ledger.list_active("doc-1", MONDAY)) == 1

    @pytest.mark.unit
    def test_window_violation_codes(self):
        from postgrest.exceptions import APIError
        from careslot.core.database import is_window_violation

        def error(code):
            return APIError({"message": "x", "code": code, "hint": None, "details": None})

        assert is_window_violation(error("23505"))
        assert is_window_violation(error("23P01"))
        assert not is_window_violation(error("23503"))
        assert not is_window_violation(RuntimeError("23505"))


class TestTransitions:

    @pytest.mark.unit
    def test_cancel_records_reason(self, ledger):
        reservation = commit(ledger, time(10, 0), time(10, 15))

        cancelled = ledger.cancel(reservation.id, "Feeling better")

        assert cancelled.status == ReservationStatus.CANCELLED
        assert cancelled.cancellation_reason == "Feeling better"

    @pytest.mark.unit
    @pytest.mark.parametrize("first,second", [
        ("cancel", "cancel"),
        ("cancel", "mark_completed"),
        ("mark_completed", "mark_no_show"),
        ("mark_no_show", "cancel"),
        ("mark_completed", "mark_completed"),
    ])
    def test_terminal_states_reject_transitions(self, ledger, first, second):
        reservation = commit(ledger, time(10, 0), time(10, 15))
        args = ("reason",) if first == "cancel" else ()
        getattr(ledger, first)(reservation.id, *args)

        second_args = ("reason",) if second == "cancel" else ()
        with pytest.raises(InvalidTransitionError) as exc_info:
            getattr(ledger, second)(reservation.id, *second_args)

        assert exc_info.value.details["reservation_id"] == reservation.id

    @pytest.mark.unit
    def test_reservations_are_never_deleted(self, ledger, mock_data):
        reservation = commit(ledger, time(10, 0), time(10, 15))
        ledger.cancel(reservation.id, "reason")

        assert len(mock_data["reservations"]) == 1
        assert mock_data["reservations"][0]["status"] == "CANCELLED"

    @pytest.mark.unit
    def test_unknown_reservation(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.cancel("missing", "reason")

    @pytest.mark.unit
    def test_transition_table(self):
        from careslot.services.ledger import can_transition

        assert can_transition(ReservationStatus.BOOKED, ReservationStatus.NO_SHOW)
        assert not can_transition(ReservationStatus.CANCELLED, ReservationStatus.BOOKED)
        assert not can_transition(ReservationStatus.BOOKED, ReservationStatus.BOOKED)


class TestConcurrentCommits:

    @pytest.mark.concurrency
    @pytest.mark.parametrize("n", [1, 2, 8, 25])
    def test_identical_commits_yield_exactly_one_success(self, ledger, n):
        barrier = threading.Barrier(n)

        def attempt(i):
            barrier.wait()
            try:
                return commit(ledger, time(10, 0), time(10, 15), subject_id=f"patient-{i}")
            except ConflictError as e:
                return e

        with ThreadPoolExecutor(max_workers=n) as pool:
            results = list(pool.map(attempt, range(n)))

        successes = [r for r in results if not isinstance(r, ConflictError)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]

        assert len(successes) == 1
        assert len(conflicts) == n - 1

    @pytest.mark.concurrency
    def test_randomized_commits_never_overlap(self, ledger):
        rng = random.Random(7)
        requests = []
        for i in range(120):
            provider = rng.choice(["doc-1", "doc-2"])
            day = MONDAY + timedelta(days=rng.randint(0, 1))
            start_minute = rng.randrange(9 * 60, 12 * 60, 5)
            length = rng.choice([10, 15, 30])
            requests.append((
                provider, day,
                time(start_minute // 60, start_minute % 60),
                time((start_minute + length) // 60, (start_minute + length) % 60),
                f"patient-{i}",
            ))

        def attempt(request):
            provider, day, start, end, subject = request
            try:
                commit(ledger, start, end, provider_id=provider, slot_date=day, subject_id=subject)
            except ConflictError:
                pass

        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(attempt, requests))

        for provider in ("doc-1", "doc-2"):
            active = ledger.list_active(provider, MONDAY, MONDAY + timedelta(days=1))
            assert active
            for i, a in enumerate(active):
                for b in active[i + 1:]:
                    assert not a.overlaps(b.slot_date, b.start_time, b.end_time), (a, b)

    @pytest.mark.concurrency
    def test_lock_timeout_is_retryable(self, ledger):
        from careslot.core.exceptions import LockTimeoutError
        from careslot.services.locks import KeyedLockRegistry, slot_key

        registry = KeyedLockRegistry()
        ledger.locks = registry
        held = threading.Event()
        release = threading.Event()

        def hold():
            with registry.hold([slot_key("doc-1", MONDAY)]):
                held.set()
                release.wait(5)

        holder = threading.Thread(target=hold)
        holder.start()
        held.wait(5)
        try:
            with pytest.raises(LockTimeoutError) as exc_info:
                with registry.hold([slot_key("doc-1", MONDAY)], timeout=0.05):
                    pass
        finally:
            release.set()
            holder.join()

        assert exc_info.value.details["retryable"] is True
        assert exc_info.value.status_code == 503
        commit(ledger, time(10, 0), time(10, 15))

    @pytest.mark.concurrency
    @pytest.mark.parametrize("target_day", [MONDAY, MONDAY + timedelta(days=1)])
    def test_reschedule_races_commits_for_same_window(self, ledger, target_day):
        original = commit(ledger, time(9, 0), time(9, 15), subject_id="patient-moving")
        n = 12
        barrier = threading.Barrier(n)

        def attempt(i):
            barrier.wait()
            try:
                if i == 0:
                    return ledger.reschedule(original.id, target_day, time(10, 0), time(10, 15))
                return commit(
                    ledger, time(10, 0), time(10, 15),
                    slot_date=target_day, subject_id=f"patient-{i}"
                )
            except ConflictError as e:
                return e

        with ThreadPoolExecutor(max_workers=n) as pool:
            results = list(pool.map(attempt, range(n)))

        successes = [r for r in results if not isinstance(r, ConflictError)]
        assert len(successes) == 1

        active = ledger.list_active("doc-1", MONDAY, MONDAY + timedelta(days=1))
        for i, a in enumerate(active):
            for b in active[i + 1:]:
                assert not a.overlaps(b.slot_date, b.start_time, b.end_time), (a, b)

        moved = not isinstance(results[0], ConflictError)
        assert ledger.get(original.id).status == (
            ReservationStatus.CANCELLED if moved else ReservationStatus.BOOKED
        )
        assert len([r for r in active if r.slot_date == target_day and r.start_time == time(10, 0)]) == 1


class TestLockRegistry:

    @pytest.mark.unit
    def test_released_keys_are_dropped(self, ledger):
        from careslot.services.locks import KeyedLockRegistry

        registry = KeyedLockRegistry()
        ledger.locks = registry

        for offset in range(50):
            commit(ledger, time(10, 0), time(10, 15), slot_date=MONDAY + timedelta(days=offset))

        assert registry.active_key_count() == 0

    @pytest.mark.unit
    def test_key_kept_while_held(self):
        from careslot.services.locks import KeyedLockRegistry, slot_key

        registry = KeyedLockRegistry()

        with registry.hold([slot_key("doc-1", MONDAY), slot_key("doc-1", MONDAY + timedelta(days=1))]):
            assert registry.active_key_count() == 2

        assert registry.active_key_count() == 0

    @pytest.mark.concurrency
    def test_timed_out_waiter_releases_its_key(self):
        from careslot.core.exceptions import LockTimeoutError
        from careslot.services.locks import KeyedLockRegistry, slot_key

        registry = KeyedLockRegistry()
        key = slot_key("doc-1", MONDAY)

        with registry.hold([key]):
            waiter_error = []

            def wait():
                try:
                    with registry.hold([key], timeout=0.05):
                        pass
                except LockTimeoutError as e:
                    waiter_error.append(e)

            waiter = threading.Thread(target=wait)
            waiter.start()
            waiter.join()
            assert waiter_error
            assert registry.active_key_count() == 1

        assert registry.active_key_count() == 0
