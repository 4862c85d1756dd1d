"""
Unit tests for the verification code poller and its retry policy
"""

import asyncio
import random

import pytest

from regflow.exceptions import VerificationTimeoutError
from regflow.services.automation.registration_state_machine import RegistrationState, RegistrationStateMachine
from regflow.services.verification_poller import VerificationCode, VerificationPoller

S = RegistrationState


class ScriptedChannel:
    """check_code fake answering from a script, then repeating the last answer"""

    def __init__(self, answers):
        self.answers = list(answers)
        self.calls = []

    async def __call__(self, session_id, email):
        self.calls.append((session_id, email))
        if len(self.answers) > 1:
            return self.answers.pop(0)
        return self.answers[0] if self.answers else None


def fast_poller(check_code, **kwargs) -> VerificationPoller:
    options = {
        "session_id": "session-1",
        "email": "reg-abc123@example.com",
        "interval": 0.01,
        "jitter": 0.0,
        "deadline": 0.05,
        "call_timeout": 0.5,
        "cooldown": 0.0,
        "rearm_timeout": 1.0,
    }
    options.update(kwargs)
    return VerificationPoller(check_code, **options)


def waiting_fsm() -> RegistrationStateMachine:
    fsm = RegistrationStateMachine(max_retries=3)
    fsm.from_record({"current_state": S.WAITING_VERIFICATION.value})
    return fsm


class TestPolling:

    @pytest.mark.asyncio
    async def test_code_is_delivered_once(self):
        code = {"code": "482913", "received_at": "t4"}
        channel = ScriptedChannel([None, None, None, code, code])
        poller = fast_poller(channel)
        heard = []
        poller.add_code_listener(heard.append)

        results = [await poller.poll_once() for _ in range(5)]

        assert results[:3] == [None, None, None]
        assert results[3] == VerificationCode("482913", "t4")
        assert results[4] is None
        assert heard == [VerificationCode("482913", "t4")]
        assert poller.ticks == 5

    @pytest.mark.asyncio
    async def test_same_code_with_new_timestamp_is_new(self):
        channel = ScriptedChannel([{"code": "1", "received_at": "t1"}, {"code": "1", "received_at": "t2"}])
        poller = fast_poller(channel)

        assert await poller.poll_once() is not None
        assert await poller.poll_once() is not None

    @pytest.mark.asyncio
    async def test_seen_signatures_survive_a_restart(self):
        channel = ScriptedChannel([{"code": "482913", "received_at": "t4"}])
        first = fast_poller(channel)
        assert await first.poll_once() is not None

        second = fast_poller(channel, seen_signatures=first.seen_signatures)
        assert await second.poll_once() is None

    @pytest.mark.asyncio
    async def test_failed_tick_is_swallowed(self):
        async def broken(session_id, email):
            raise ConnectionError("network down")

        poller = fast_poller(broken)
        assert await poller.poll_once() is None

    @pytest.mark.asyncio
    async def test_slow_tick_is_bounded(self):
        async def slow(session_id, email):
            await asyncio.sleep(5)

        poller = fast_poller(slow, call_timeout=0.01)
        assert await poller.poll_once() is None

    @pytest.mark.asyncio
    async def test_normalizes_answers(self):
        poller = fast_poller(ScriptedChannel([VerificationCode("7")]))
        assert (await poller.poll_once()).code == "7"

        poller = fast_poller(ScriptedChannel([{"code": 123456}]))
        assert (await poller.poll_once()).code == "123456"

        poller = fast_poller(ScriptedChannel([{"success": True}]))
        assert await poller.poll_once() is None

    def test_correlation_required(self):
        with pytest.raises(ValueError):
            VerificationPoller(ScriptedChannel([]))

    def test_correlation_prefers_session(self):
        assert fast_poller(ScriptedChannel([])).correlation == "session-1"
        assert fast_poller(ScriptedChannel([]), session_id=None).correlation == "reg-abc123@example.com"

    def test_jitter_stays_in_range(self):
        poller = fast_poller(ScriptedChannel([]), interval=2.0, jitter=0.3, rng=random.Random(7))
        delays = [poller._next_delay() for _ in range(100)]

        assert all(1.7 <= d <= 2.3 for d in delays)
        assert len(set(delays)) > 1


class TestWaitAndStop:

    @pytest.mark.asyncio
    async def test_wait_for_code_returns_new_code(self):
        channel = ScriptedChannel([None, None, {"code": "482913", "received_at": "t"}])
        poller = fast_poller(channel)

        found = await poller.wait_for_code(deadline=1.0)
        assert found.code == "482913"
        assert len(channel.calls) == 3
        assert poller.is_active is False

    @pytest.mark.asyncio
    async def test_wait_for_code_deadline(self):
        poller = fast_poller(ScriptedChannel([None]))
        assert await poller.wait_for_code(deadline=0.03) is None

    @pytest.mark.asyncio
    async def test_stop_interrupts_wait(self):
        poller = fast_poller(ScriptedChannel([None]), interval=10.0)
        waiter = asyncio.ensure_future(poller.wait_for_code(deadline=30.0))
        await asyncio.sleep(0.02)

        poller.stop()
        poller.stop()

        assert await asyncio.wait_for(waiter, timeout=1.0) is None
        assert poller.is_active is False

    @pytest.mark.asyncio
    async def test_background_subscription(self):
        channel = ScriptedChannel([None, {"code": "482913", "received_at": "t"}])
        poller = fast_poller(channel)
        heard = asyncio.Event()
        poller.add_code_listener(lambda code: heard.set())

        poller.start()
        assert poller.start() is poller._task
        await asyncio.wait_for(heard.wait(), timeout=1.0)

        poller.stop()
        await poller.wait_closed()
        assert poller._task.done()
        assert poller.is_active is False

    @pytest.mark.asyncio
    async def test_result_in_flight_is_dropped_after_stop(self):
        release = asyncio.Event()

        async def gated(session_id, email):
            await release.wait()
            return {"code": "482913", "received_at": "t"}

        poller = fast_poller(gated, call_timeout=5.0)
        heard = []
        poller.add_code_listener(heard.append)

        poller.start()
        await asyncio.sleep(0.01)
        poller.stop()
        release.set()
        await poller.wait_closed()

        assert heard == []


class TestRetryPolicy:

    @pytest.mark.asyncio
    async def test_three_retries_then_error(self):
        fsm = waiting_fsm()
        states = []
        fsm.add_listener(lambda new, old, patch: states.append(new))

        async def rearm(machine):
            await asyncio.sleep(0)
            return (machine.transition(S.DETECTING_PAGE)
                    and machine.transition(S.FILLING_STEP1)
                    and machine.transition(S.WAITING_VERIFICATION))

        poller = fast_poller(ScriptedChannel([None]))
        assert await poller.run_with_retries(fsm, rearm=rearm) is None

        one_round = [S.ERROR, S.RETRYING, S.DETECTING_PAGE, S.FILLING_STEP1, S.WAITING_VERIFICATION]
        assert states == one_round * 3 + [S.ERROR]
        assert fsm.is_error()
        assert fsm.retry_count == 3
        assert fsm.get_metadata()["reason"] == "No verification code after 3 retries"
        assert fsm.get_metadata()["retry"] == "3/3"

    @pytest.mark.asyncio
    async def test_retrying_carries_progress_and_reason(self):
        fsm = waiting_fsm()
        patches = []
        fsm.add_listener(lambda new, old, patch: patches.append((new, patch)))

        async def rearm(machine):
            return False

        poller = fast_poller(ScriptedChannel([None]))
        await poller.run_with_retries(fsm, rearm=rearm)

        error_patch = patches[0][1]
        assert patches[0][0] == S.ERROR
        assert error_patch["retryable"] is True
        retrying = patches[1]
        assert retrying[0] == S.RETRYING
        assert retrying[1]["retry"] == "1/3"
        assert "No verification code" in retrying[1]["reason"]
        # A failed re-arm ends in ERROR
        assert fsm.is_error()
        assert fsm.get_metadata()["reason"] == "Could not restart the registration page flow"

    @pytest.mark.asyncio
    async def test_direct_retry_from_filling_state(self):
        fsm = RegistrationStateMachine()
        fsm.from_record({"current_state": S.WAITING_CLOUDFLARE.value})
        states = []
        fsm.add_listener(lambda new, old, patch: states.append(new))

        async def rearm(machine):
            return False

        await fast_poller(ScriptedChannel([None])).run_with_retries(fsm, rearm=rearm)
        assert states[0] == S.RETRYING

    @pytest.mark.asyncio
    async def test_transitions_go_through_commit_hook(self):
        fsm = waiting_fsm()
        fsm.retry_count = 2
        committed = []

        async def commit(target, metadata=None):
            committed.append(target)
            return fsm.transition(target, metadata)

        async def rearm(machine):
            return (await commit(S.DETECTING_PAGE)
                    and await commit(S.FILLING_STEP1)
                    and await commit(S.WAITING_VERIFICATION))

        poller = fast_poller(ScriptedChannel([None]))
        assert await poller.run_with_retries(fsm, rearm=rearm, commit=commit) is None

        assert committed == [S.ERROR, S.RETRYING, S.DETECTING_PAGE, S.FILLING_STEP1,
                             S.WAITING_VERIFICATION, S.ERROR]
        assert fsm.is_error()

    @pytest.mark.asyncio
    async def test_default_rearm_uses_commit_hook(self):
        fsm = waiting_fsm()
        committed = []

        async def commit(target, metadata=None):
            committed.append(target)
            ok = fsm.transition(target, metadata)
            if ok and target == S.DETECTING_PAGE:
                fsm.transition(S.FILLING_STEP2)
                fsm.transition(S.WAITING_VERIFICATION)
            return ok

        async def channel(session_id, email):
            if fsm.retry_count >= 1 and fsm.get_state() == S.WAITING_VERIFICATION:
                return {"code": "482913", "received_at": "t"}
            return None

        found = await fast_poller(channel).run_with_retries(fsm, commit=commit)

        assert found.code == "482913"
        assert committed == [S.ERROR, S.RETRYING, S.DETECTING_PAGE]

    @pytest.mark.asyncio
    async def test_raise_on_exhaustion(self):
        fsm = waiting_fsm()
        fsm.retry_count = 3

        with pytest.raises(VerificationTimeoutError) as exc_info:
            await fast_poller(ScriptedChannel([None])).run_with_retries(fsm, raise_on_exhaustion=True)

        assert exc_info.value.attempts == 1
        assert fsm.is_error()

    @pytest.mark.asyncio
    async def test_code_after_retry_with_default_rearm(self):
        fsm = waiting_fsm()

        async def channel(session_id, email):
            if fsm.retry_count >= 1 and fsm.get_state() == S.WAITING_VERIFICATION:
                return {"code": "482913", "received_at": "t"}
            return None

        async def page_flow():
            # Plays the page agent: when detection restarts, walk back to WAITING_VERIFICATION
            while fsm.get_state() != S.DETECTING_PAGE:
                await asyncio.sleep(0.005)
            fsm.transition(S.FILLING_STEP2)
            fsm.transition(S.WAITING_VERIFICATION)

        driver = asyncio.ensure_future(page_flow())
        found = await fast_poller(channel).run_with_retries(fsm)
        await driver

        assert found.code == "482913"
        assert fsm.get_state() == S.WAITING_VERIFICATION
        assert fsm.retry_count == 1

    @pytest.mark.asyncio
    async def test_stop_during_cooldown(self):
        fsm = waiting_fsm()
        rearmed = []

        async def rearm(machine):
            rearmed.append(True)
            return True

        poller = fast_poller(ScriptedChannel([None]), cooldown=10.0)
        runner = asyncio.ensure_future(poller.run_with_retries(fsm, rearm=rearm))
        while fsm.get_state() != S.RETRYING:
            await asyncio.sleep(0.005)

        poller.stop()
        assert await asyncio.wait_for(runner, timeout=1.0) is None
        assert rearmed == []
