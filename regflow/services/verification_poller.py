"""
Verification code poller

Polls the "has a code arrived" channel for one session/email pair:
- immediate first check, then every ``interval`` seconds +/- ``jitter``
- each check bounded by its own ``call_timeout``
- results deduplicated by ``(received_at, code)``, so listeners hear about
  each distinct code once, including across stop/start
- a failing check is logged and retried on the next tick

``run_with_retries`` adds the workflow policy on top: when a deadline passes
with no code the state machine goes to RETRYING (if the retry budget allows),
waits a cooldown, re-arms the page flow and polls again; once the budget is
spent it goes to ERROR with a reason. Those transitions go through an
optional ``commit`` hook so the caller can persist them.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

from ..exceptions import VerificationTimeoutError
from .automation.registration_state_machine import RegistrationState, RegistrationStateMachine
from .callbacks import ListenerRegistry, Unsubscribe

CheckCode = Callable[[Optional[str], Optional[str]], Awaitable[Any]]
Rearm = Callable[[RegistrationStateMachine], Awaitable[bool]]
Commit = Callable[[RegistrationState, Optional[Dict[str, Any]]], Awaitable[bool]]


@dataclass(frozen=True)
class VerificationCode:
    code: str
    received_at: Optional[str] = None

    @property
    def signature(self) -> str:
        return f"{self.received_at or ''}-{self.code}"


class VerificationPoller:
    """Bounded, cancellable polling for one verification code"""

    def __init__(self, check_code: CheckCode,
                 session_id: Optional[str] = None,
                 email: Optional[str] = None,
                 interval: float = 2.0,
                 jitter: float = 0.3,
                 deadline: float = 120.0,
                 call_timeout: float = 2.5,
                 cooldown: float = 3.0,
                 rearm_timeout: float = 60.0,
                 rng: Optional[random.Random] = None,
                 seen_signatures: Optional[Iterable[str]] = None):
        if not session_id and not email:
            raise ValueError("A session id or an email is required to poll for a code")

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.check_code = check_code
        self.session_id = session_id
        self.email = email

        self.interval = interval
        self.jitter = jitter
        self.deadline = deadline
        self.call_timeout = call_timeout
        self.cooldown = cooldown
        self.rearm_timeout = rearm_timeout
        self.rng = rng or random.Random()

        self._seen: Set[str] = set(seen_signatures or ())
        self._listeners = ListenerRegistry("code")
        self._active = False
        self._stopped = False
        self._wake: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._commit: Optional[Commit] = None

        self.ticks = 0

    @property
    def correlation(self) -> str:
        return self.session_id or self.email

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def seen_signatures(self) -> Set[str]:
        return set(self._seen)

    def add_code_listener(self, listener: Callable[[VerificationCode], None]) -> Unsubscribe:
        return self._listeners.add(listener)

    # ---- single tick ----

    @staticmethod
    def _normalize(result: Any) -> Optional[VerificationCode]:
        if result is None:
            return None
        if isinstance(result, VerificationCode):
            return result
        if isinstance(result, dict) and result.get("code"):
            return VerificationCode(code=str(result["code"]), received_at=result.get("received_at"))
        return None

    async def _fetch(self) -> Optional[VerificationCode]:
        self.ticks += 1
        try:
            result = await asyncio.wait_for(self.check_code(self.session_id, self.email), timeout=self.call_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"Code check timed out after {self.call_timeout}s ({self.correlation})")
            return None
        except Exception as e:
            self.logger.warning(f"Code check failed ({self.correlation}): {e}")
            return None
        return self._normalize(result)

    def _accept(self, found: Optional[VerificationCode]) -> Optional[VerificationCode]:
        if found is None or found.signature in self._seen:
            return None
        self._seen.add(found.signature)
        self.logger.info(f"📧 Verification code received for {self.correlation}: {found.code}")
        self._listeners.notify(found)
        return found

    async def poll_once(self) -> Optional[VerificationCode]:
        """One check; returns the code only if it was not seen before"""
        return self._accept(await self._fetch())

    # ---- loop control ----

    def _next_delay(self) -> float:
        return max(0.0, self.interval + self.rng.uniform(-self.jitter, self.jitter))

    def _begin(self):
        """Fresh run requested by a caller; clears a previous stop"""
        self._stopped = False
        self._wake = asyncio.Event()

    async def _sleep(self, delay: float):
        """Sleep that ``stop()`` interrupts immediately"""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def stop(self):
        """Stop polling; safe to call any number of times"""
        if self._stopped:
            return
        self._stopped = True
        self._active = False
        if self._wake is not None:
            self._wake.set()
        self.logger.debug(f"Poller stopped ({self.correlation})")

    async def wait_closed(self):
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def start(self) -> asyncio.Task:
        """Poll continuously in the background until ``stop()``"""
        if self._task is not None and not self._task.done():
            return self._task
        self._begin()
        self._active = True
        self._task = asyncio.get_running_loop().create_task(self._run_forever())
        return self._task

    async def _run_forever(self):
        while self._active and not self._stopped:
            found = await self._fetch()
            if not self._active:
                # 已停止 - in-flight result is dropped
                break
            self._accept(found)
            await self._sleep(self._next_delay())

    async def wait_for_code(self, deadline: Optional[float] = None) -> Optional[VerificationCode]:
        """
        Poll until a new code arrives or ``deadline`` seconds pass

        Returns:
            VerificationCode, or None on deadline or stop
        """
        self._begin()
        return await self._wait(deadline)

    async def _wait(self, deadline: Optional[float] = None) -> Optional[VerificationCode]:
        deadline = self.deadline if deadline is None else deadline
        if self._stopped:
            return None
        self._active = True
        loop = asyncio.get_running_loop()
        end = loop.time() + deadline

        try:
            while self._active and not self._stopped:
                found = await self._fetch()
                if not self._active:
                    break
                new = self._accept(found)
                if new is not None:
                    return new
                remaining = end - loop.time()
                if remaining <= 0:
                    break
                await self._sleep(min(self._next_delay(), remaining))
            return None
        finally:
            self._active = False

    # ---- retry policy ----

    @staticmethod
    def _in_memory(fsm: RegistrationStateMachine) -> Commit:
        async def commit(target: RegistrationState, metadata: Optional[Dict[str, Any]] = None) -> bool:
            return fsm.transition(target, metadata)
        return commit

    async def _enter_retrying(self, fsm: RegistrationStateMachine) -> bool:
        patch = {
            "reason": f"No verification code within {self.deadline}s",
            "retry": f"{fsm.retry_count + 1}/{fsm.max_retries}",
        }
        if fsm.can_transition_to(RegistrationState.RETRYING):
            return await self._commit(RegistrationState.RETRYING, patch)
        # WAITING_VERIFICATION has no direct edge to RETRYING
        if not await self._commit(RegistrationState.ERROR, {"reason": patch["reason"], "retryable": True}):
            return False
        return await self._commit(RegistrationState.RETRYING, patch)

    async def _default_rearm(self, fsm: RegistrationStateMachine) -> bool:
        """Send the flow back through page detection and wait for WAITING_VERIFICATION"""
        reached = asyncio.Event()

        def on_state(new_state, old_state, metadata):
            if new_state == RegistrationState.WAITING_VERIFICATION:
                reached.set()

        unsubscribe = fsm.add_listener(on_state)
        try:
            if not await self._commit(RegistrationState.DETECTING_PAGE, {"rearmed": True}):
                return False
            await asyncio.wait_for(reached.wait(), timeout=self.rearm_timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            unsubscribe()

    async def run_with_retries(self, fsm: RegistrationStateMachine, rearm: Optional[Rearm] = None,
                               raise_on_exhaustion: bool = False,
                               commit: Optional[Commit] = None) -> Optional[VerificationCode]:
        """
        Poll with the workflow retry budget

        Args:
            fsm: workflow state machine the retry budget is read from
            rearm: brings the workflow back to WAITING_VERIFICATION after a timeout
            raise_on_exhaustion: raise instead of returning None once the budget is spent
            commit: applies a transition to ``fsm``, in memory by default

        Returns:
            VerificationCode on success, None on stop or once the budget is spent

        Raises:
            VerificationTimeoutError: budget spent and ``raise_on_exhaustion`` set
        """
        rearm = rearm or self._default_rearm
        self._commit = commit or self._in_memory(fsm)
        attempts = 0
        self._begin()

        while True:
            attempts += 1
            code = await self._wait()
            if code is not None:
                return code
            if self._stopped:
                return None

            if not fsm.can_retry():
                reason = f"No verification code after {fsm.retry_count} retries"
                self.logger.error(f"❌ {reason} ({self.correlation})")
                await self._commit(RegistrationState.ERROR, {"reason": reason, "retry": fsm.retry_progress()})
                if raise_on_exhaustion:
                    raise VerificationTimeoutError(self.correlation, attempts, self.deadline)
                return None

            if not await self._enter_retrying(fsm):
                self.logger.error(f"Could not enter RETRYING from {fsm.get_state().value}")
                return None
            self.logger.info(f"⏱️ Code timeout, retrying ({fsm.retry_progress()}) in {self.cooldown}s")

            await self._sleep(self.cooldown)
            if self._stopped:
                return None

            if not await rearm(fsm):
                if self._stopped:
                    return None
                if not fsm.is_error():
                    await self._commit(RegistrationState.ERROR, {"reason": "Could not restart the registration page flow"})
                return None
