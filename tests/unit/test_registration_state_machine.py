"""
Unit tests for the registration state machine
"""

import itertools
import logging

import pytest

from regflow.services.automation.registration_state_machine import (
    PROGRESS, STATE_STORAGE_KEY, TRANSITIONS, RegistrationState, RegistrationStateMachine,
)
from regflow.services.state_store import MemoryStateStore

S = RegistrationState

HAPPY_PATH = [
    S.PREPARING, S.DETECTING_PAGE, S.FILLING_STEP1, S.WAITING_STEP1_SUBMIT,
    S.FILLING_STEP2, S.WAITING_CLOUDFLARE, S.WAITING_VERIFICATION, S.COMPLETED,
]


def machine_in(state: RegistrationState, **kwargs) -> RegistrationStateMachine:
    fsm = RegistrationStateMachine(**kwargs)
    fsm.from_record({"current_state": state.value})
    return fsm


class TestTransitionTable:

    @pytest.mark.parametrize("source,target", list(itertools.product(RegistrationState, RegistrationState)))
    def test_legality_grid(self, source, target):
        fsm = machine_in(source)
        legal = target in TRANSITIONS[source]

        assert fsm.can_transition_to(target) is legal
        assert fsm.transition(target) is legal
        assert fsm.get_state() == (target if legal else source)

    def test_happy_path(self):
        fsm = RegistrationStateMachine()
        for state in HAPPY_PATH:
            assert fsm.transition(state), state
        assert fsm.is_completed()
        assert [h["state"] for h in fsm.get_history()] == [s.value for s in HAPPY_PATH]

    def test_illegal_transition_changes_nothing(self, caplog):
        fsm = RegistrationStateMachine()
        fsm.transition(S.PREPARING, {"email": "a@b.c"})
        before = (fsm.get_state(), fsm.get_metadata(), fsm.get_history(), fsm.previous_state)

        with caplog.at_level(logging.ERROR):
            assert fsm.transition(S.COMPLETED, {"verification_code": "1"}) is False

        assert (fsm.get_state(), fsm.get_metadata(), fsm.get_history(), fsm.previous_state) == before
        assert "Illegal transition" in caplog.text

    def test_unknown_target(self):
        fsm = RegistrationStateMachine()
        assert fsm.transition("flying") is False
        assert fsm.can_transition_to("flying") is False
        assert fsm.is_idle()

    def test_string_targets_are_accepted(self):
        fsm = RegistrationStateMachine()
        assert fsm.transition("preparing")
        assert fsm.get_state() == S.PREPARING


class TestQueries:

    @pytest.mark.parametrize("state", list(RegistrationState))
    def test_progress_depends_only_on_state(self, state):
        fsm = machine_in(state)
        fsm.retry_count = 2
        fsm.metadata = {"anything": True}

        assert fsm.get_progress() == PROGRESS[state]

    def test_progress_values(self):
        assert PROGRESS[S.IDLE] == 0
        assert PROGRESS[S.WAITING_VERIFICATION] == 85
        assert PROGRESS[S.COMPLETED] == 100
        assert PROGRESS[S.RETRYING] == 15

    @pytest.mark.parametrize("state", list(RegistrationState))
    def test_auto_restore_only_for_in_progress_states(self, state):
        fsm = machine_in(state)
        expected = state not in (S.IDLE, S.COMPLETED, S.ERROR)

        assert fsm.should_auto_restore() is expected
        assert fsm.is_in_progress() is expected
        assert fsm.can_start_new_registration() is (not expected)

    def test_state_text_includes_retry_progress(self):
        fsm = machine_in(S.ERROR)
        fsm.transition(S.RETRYING)

        assert fsm.get_state_text() == "Retrying... (1/3)"
        assert machine_in(S.IDLE).get_state_text() == "Ready"

    def test_metadata_copy_is_detached(self):
        fsm = RegistrationStateMachine()
        fsm.transition(S.PREPARING, {"email": "a@b.c"})
        fsm.get_metadata()["email"] = "changed"

        assert fsm.get_metadata()["email"] == "a@b.c"


class TestRetryAccounting:

    def test_count_increments_on_retrying_and_survives_the_loop(self):
        fsm = machine_in(S.WAITING_VERIFICATION)
        for expected in (1, 2, 3):
            assert fsm.transition(S.ERROR, {"reason": "timeout"})
            assert fsm.transition(S.RETRYING)
            assert fsm.retry_count == expected
            assert fsm.transition(S.DETECTING_PAGE)
            assert fsm.transition(S.FILLING_STEP1)
            assert fsm.transition(S.WAITING_VERIFICATION)
            assert fsm.retry_count == expected

        assert fsm.can_retry() is False
        assert fsm.retry_progress() == "3/3"

    @pytest.mark.parametrize("target", [S.IDLE, S.COMPLETED])
    def test_count_resets_when_an_attempt_starts_or_finishes(self, target):
        source = S.RETRYING if target == S.IDLE else S.WAITING_VERIFICATION
        fsm = machine_in(source)
        fsm.retry_count = 2

        assert fsm.transition(target)
        assert fsm.retry_count == 0

    def test_count_resets_on_preparing(self):
        fsm = RegistrationStateMachine()
        fsm.retry_count = 2
        fsm.transition(S.PREPARING)
        assert fsm.retry_count == 0

    def test_count_kept_through_error(self):
        fsm = machine_in(S.FILLING_STEP1)
        fsm.retry_count = 1
        fsm.transition(S.ERROR)
        assert fsm.retry_count == 1

    def test_reset_clears_everything(self):
        fsm = RegistrationStateMachine()
        calls = []
        fsm.add_listener(lambda *args: calls.append(args))
        fsm.transition(S.PREPARING, {"email": "a@b.c"})
        fsm.retry_count = 2

        fsm.reset()

        assert fsm.is_idle()
        assert fsm.retry_count == 0
        assert fsm.get_metadata() == {}
        assert fsm.get_history() == []
        assert fsm.previous_state is None
        assert len(calls) == 1  # reset does not notify


class TestListeners:

    def test_listener_receives_new_old_and_patch(self):
        fsm = RegistrationStateMachine()
        calls = []
        fsm.add_listener(lambda new, old, patch: calls.append((new, old, patch)))

        fsm.transition(S.PREPARING, {"email": "a@b.c"})

        assert calls == [(S.PREPARING, S.IDLE, {"email": "a@b.c"})]

    def test_unsubscribe_and_remove(self):
        fsm = RegistrationStateMachine()
        calls = []
        listener = lambda *args: calls.append(args)  # noqa: E731
        unsubscribe = fsm.add_listener(listener)
        unsubscribe()
        fsm.transition(S.PREPARING)

        fsm.add_listener(listener)
        assert fsm.remove_listener(listener) is True
        fsm.transition(S.DETECTING_PAGE)

        assert calls == []

    def test_failing_listener_does_not_block_others(self):
        fsm = RegistrationStateMachine()
        calls = []

        def broken(*args):
            raise RuntimeError("listener failure")

        fsm.add_listener(broken)
        fsm.add_listener(lambda new, old, patch: calls.append(new))

        assert fsm.transition(S.PREPARING) is True
        assert calls == [S.PREPARING]

    def test_transition_from_listener_is_rejected(self):
        fsm = RegistrationStateMachine()
        results = []

        def chain(new, old, patch):
            if new == S.PREPARING:
                results.append(fsm.transition(S.DETECTING_PAGE))

        fsm.add_listener(chain)
        fsm.transition(S.PREPARING)

        assert results == [False]
        assert fsm.get_state() == S.PREPARING
        # Accepted again once notification is over
        assert fsm.transition(S.DETECTING_PAGE) is True


class TestPersistence:

    @pytest.mark.asyncio
    async def test_save_and_load_round_trip(self):
        store = MemoryStateStore()
        fsm = RegistrationStateMachine(store=store, clock=lambda: 1_700_000_000.0)
        fsm.transition(S.PREPARING, {"email": "a@b.c", "session_id": "s-1"})
        fsm.transition(S.DETECTING_PAGE)

        record = await fsm.save_to_storage()
        assert record["timestamp"] == 1_700_000_000_000
        assert (await store.get(STATE_STORAGE_KEY))["current_state"] == "detecting_page"

        other = RegistrationStateMachine(store=store)
        assert await other.load_from_storage() is True
        assert other.get_state() == S.DETECTING_PAGE
        assert other.previous_state == S.PREPARING
        assert other.get_metadata() == {"email": "a@b.c", "session_id": "s-1"}
        assert len(other.get_history()) == 2
        # Restored machine keeps enforcing the table
        assert other.transition(S.FILLING_STEP2) is True

    @pytest.mark.asyncio
    async def test_load_without_record(self):
        fsm = RegistrationStateMachine(store=MemoryStateStore())
        assert await fsm.load_from_storage() is False
        assert fsm.is_idle()

    @pytest.mark.asyncio
    async def test_load_without_store(self):
        assert await RegistrationStateMachine().load_from_storage() is False

    @pytest.mark.asyncio
    async def test_clear_storage(self):
        store = MemoryStateStore()
        fsm = RegistrationStateMachine(store=store)
        await fsm.save_to_storage()
        await fsm.clear_storage()
        assert await store.get(STATE_STORAGE_KEY) is None

    def test_unusable_record_is_ignored(self):
        fsm = RegistrationStateMachine()
        assert fsm.from_record({"current_state": "flying"}) is False
        assert fsm.from_record({}) is False
        assert fsm.is_idle()
