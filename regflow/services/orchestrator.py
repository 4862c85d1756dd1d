"""
Registration orchestrator

Glue between the page agent, the state machine, the sync layer, the smart
validator and the verification poller. All collaborators are passed in; the
orchestrator owns none of them globally.

Every persisted mutation goes through ``execute_with_lock``:

    transition -> save_to_storage -> sync_state

Event mapping:

    start                  IDLE -> PREPARING -> DETECTING_PAGE -> fillForm
    fill ok                -> FILLING_STEP1/2 -> WAITING_VERIFICATION, start monitoring
    fill failed            -> ERROR(reason)
    pageReady step1/step2  -> FILLING_STEP1 / FILLING_STEP2
    registrationSubmitted  FILLING_STEP1 -> WAITING_STEP1_SUBMIT, later steps -> WAITING_VERIFICATION
    cloudflareWaiting      -> WAITING_CLOUDFLARE
    code received          -> COMPLETED(verification_code), mark verified, fill code
    code timeout           -> RETRYING (budget left) or ERROR(reason)
    manual stop            -> reset + clear storage
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

from ..account_generator import AccountGenerator
from ..config import RegflowConfig
from ..exceptions import RegflowError
from ..models.registration import RecordStatus, RegistrationRecord
from ..models.verdict import SmartCheckResult
from .api_client import AccountServiceClient
from .automation.page_agent import (
    ACTION_CLOUDFLARE, ACTION_PAGE_READY, ACTION_SUBMITTED, AgentMessage, PageAgent,
)
from .automation.registration_state_machine import RegistrationState, RegistrationStateMachine
from .persistence_service import RecordCache
from .smart_validator import SmartValidator
from .state_sync import StateSyncManager
from .verification_poller import VerificationCode, VerificationPoller

S = RegistrationState

PollerFactory = Callable[[Optional[str], Optional[str]], VerificationPoller]

STEP_STATES = {"step1": S.FILLING_STEP1, "step2": S.FILLING_STEP2}


def record_from_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """The RegistrationRecord fields kept in workflow metadata"""
    return {
        "email": metadata.get("email"),
        "password": metadata.get("password"),
        "username": metadata.get("username"),
        "session_id": metadata.get("session_id"),
        "status": metadata.get("status", RecordStatus.PENDING.value),
        "created_at": metadata.get("created_at"),
    }


class RegistrationOrchestrator:
    """Drives one registration workflow for one execution context"""

    def __init__(self, fsm: RegistrationStateMachine,
                 sync: StateSyncManager,
                 validator: SmartValidator,
                 api_client: AccountServiceClient,
                 record_cache: RecordCache,
                 page_agent: PageAgent,
                 generator: AccountGenerator,
                 config: Optional[RegflowConfig] = None,
                 poller_factory: Optional[PollerFactory] = None):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.fsm = fsm
        self.sync = sync
        self.validator = validator
        self.api_client = api_client
        self.record_cache = record_cache
        self.page_agent = page_agent
        self.generator = generator
        self.config = config or RegflowConfig()
        self.poller_factory = poller_factory or self._default_poller

        self.on_log_message: Optional[Callable[[str], None]] = None

        self.poller: Optional[VerificationPoller] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._last_saved_ts = 0
        self._writing = False
        self._unsubscribe_sync: Optional[Callable[[], None]] = None

        self.page_agent.set_message_callback(self.handle_message)

    def _log(self, message: str):
        """Internal logging and callback"""
        self.logger.info(message)
        if self.on_log_message:
            self.on_log_message(message)

    def _default_poller(self, session_id: Optional[str], email: Optional[str]) -> VerificationPoller:
        engine = self.config.engine
        return VerificationPoller(
            self.api_client.check_code,
            session_id=session_id,
            email=email,
            interval=self.config.api.poll_interval,
            jitter=engine.poll_jitter,
            deadline=engine.poll_deadline,
            call_timeout=engine.poll_call_timeout,
            cooldown=engine.retry_cooldown,
            rearm_timeout=engine.rearm_timeout,
        )

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ---- lifecycle ----

    async def initialize(self):
        await self.sync.init()
        if self._unsubscribe_sync is None:
            self._unsubscribe_sync = self.sync.add_sync_listener(self._on_remote_change)

    async def shutdown(self):
        """Stop monitoring (state is kept for a later restore) and release resources"""
        self._stop_poller()
        if self._monitor_task is not None:
            await asyncio.gather(self._monitor_task, return_exceptions=True)
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self._unsubscribe_sync is not None:
            self._unsubscribe_sync()
            self._unsubscribe_sync = None
        await self.sync.destroy()
        await self.page_agent.cleanup()
        await self.api_client.aclose()

    def _on_remote_change(self, record: Optional[Dict[str, Any]]):
        """React to a write made by another context"""
        if self._writing:
            return
        if record is None:
            if not self.fsm.is_idle():
                self._log("🔄 State cleared by another context")
                self._stop_poller()
                self.fsm.reset()
            return
        if record.get("current_state") == self.fsm.get_state().value:
            return
        if (record.get("timestamp") or 0) <= self._last_saved_ts:
            return
        if self.fsm.from_record(record):
            self._last_saved_ts = record.get("timestamp") or 0
            self._log(f"🔄 Adopted state from another context: {self.fsm.get_state().value}")

    # ---- persistence helpers ----

    async def _save_and_sync(self):
        record = await self.fsm.save_to_storage()
        self._last_saved_ts = record["timestamp"]
        await self.sync.sync_state(record)

    async def _locked(self, operation):
        """Run ``operation`` under the lock; our own store echoes are ignored meanwhile"""
        async def guarded():
            self._writing = True
            try:
                return await operation()
            finally:
                self._writing = False

        return await self.sync.execute_with_lock(guarded)

    async def _commit(self, target: RegistrationState, metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Transition, save and broadcast under the cross-context lock"""
        async def operation():
            if not self.fsm.transition(target, metadata):
                return False
            await self._save_and_sync()
            return True

        return await self._locked(operation)

    async def _clear(self):
        async def operation():
            self.fsm.reset()
            await self.fsm.clear_storage()

        await self._locked(operation)

    def _current_record(self) -> Dict[str, Any]:
        return record_from_metadata(self.fsm.get_metadata())

    async def _smart_check(self) -> SmartCheckResult:
        """Validate the saved record; a clear or retry verdict resets it under the lock"""
        return await self._locked(
            lambda: self.validator.smart_check_and_handle(self._current_record(), self.fsm)
        )

    def _profile(self) -> Dict[str, str]:
        metadata = self.fsm.get_metadata()
        return {"first_name": metadata.get("first_name", ""), "last_name": metadata.get("last_name", "")}

    # ---- cold start ----

    async def restore(self) -> str:
        """
        Reconcile the last persisted workflow after a (re)start

        Returns:
            str: "none", "cleared", "retry", "monitoring", "continue" or "completed"
        """
        if not await self.fsm.load_from_storage():
            return "none"

        metadata = self.fsm.get_metadata()
        if metadata.get("email"):
            check = await self._smart_check()
            action = check.result.action
            if action in ("cleared", "retry"):
                self._log(f"🧹 {check.result.message}")
                return action
            code = check.result.verification_code
            if action == "continue" and code and self.fsm.get_state() == S.WAITING_VERIFICATION:
                await self._complete(VerificationCode(code=code))
                return "completed"

        if self.fsm.should_auto_restore():
            self._log(f"♻️ Restoring registration in state {self.fsm.get_state().value}")
            if self.fsm.get_state() == S.WAITING_VERIFICATION:
                self.start_verification_monitoring()
                return "monitoring"
            return "continue"

        if self.fsm.is_completed() or self.fsm.is_error():
            await self._clear()
            return "cleared"
        return "none"

    # ---- registration ----

    async def start_registration(self) -> bool:
        """Start a new registration, or continue the saved one if it is still valid"""
        if self.fsm.get_metadata().get("email"):
            check = await self._smart_check()
            result = check.result
            if result.action == "continue":
                state = self.fsm.get_state()
                if result.verification_code and state == S.WAITING_VERIFICATION:
                    return await self._complete(VerificationCode(code=result.verification_code))
                if self.fsm.is_in_progress():
                    self._log(f"▶️ {result.message}")
                    if state == S.WAITING_VERIFICATION:
                        self.start_verification_monitoring()
                    return True

        if not self.fsm.is_idle():
            await self._clear()

        identity = self.generator.generate_identity()
        record = RegistrationRecord(
            email=identity["email"],
            password=identity["password"],
            username=identity["username"],
            session_id=self.generator.generate_session_id(),
        )
        metadata = {
            **{k: v for k, v in record.to_dict().items() if k not in ("verification_code", "updated_at")},
            "first_name": identity.get("first_name", ""),
            "last_name": identity.get("last_name", ""),
        }

        if not await self._commit(S.PREPARING, metadata):
            return False
        self._log(f"🚀 Starting registration for {record.email}")

        self.record_cache.save_record(record)
        self._spawn(self.api_client.save_account_with_retry(record))

        if not await self._commit(S.DETECTING_PAGE):
            return False
        return await self._fill_form(record)

    async def _fill_form(self, record: Optional[RegistrationRecord] = None, start_monitor: bool = True) -> bool:
        """Ask the page agent to fill the form and advance to WAITING_VERIFICATION"""
        if record is None:
            record = RegistrationRecord.from_dict(self._current_record())

        response = await self.page_agent.fill_form(record, self._profile())
        if not response.success:
            reason = response.error or "Form fill failed"
            self._log(f"❌ Form fill failed: {reason}")
            if self.fsm.can_transition_to(S.ERROR):
                await self._commit(S.ERROR, {"reason": reason})
            return False

        if self.fsm.get_state() == S.DETECTING_PAGE:
            await self._commit(STEP_STATES.get(response.step or "step1", S.FILLING_STEP1))
        if self.fsm.get_state() != S.WAITING_VERIFICATION:
            if not await self._commit(S.WAITING_VERIFICATION, {"email": record.email}):
                return False

        self._log(f"📨 Form submitted, waiting for the verification code ({record.email})")
        if start_monitor:
            self.start_verification_monitoring()
        return True

    async def handle_message(self, message: AgentMessage) -> bool:
        """
        Handle a message from the page agent

        Returns:
            bool: True if the message caused a transition
        """
        action = message.get("action")
        state = self.fsm.get_state()
        try:
            if action == ACTION_PAGE_READY:
                target = STEP_STATES.get(message.get("step"))
                self.logger.debug(f"Page ready: {message.get('url')} ({message.get('step')})")
                if target is not None and self.fsm.can_transition_to(target):
                    return await self._commit(target, {"page_url": message.get("url")})
                return False

            if action == ACTION_SUBMITTED:
                if state == S.FILLING_STEP1:
                    return await self._commit(S.WAITING_STEP1_SUBMIT)
                if state in (S.WAITING_STEP1_SUBMIT, S.FILLING_STEP2, S.WAITING_CLOUDFLARE):
                    if await self._commit(S.WAITING_VERIFICATION):
                        self.start_verification_monitoring()
                        return True
                return False

            if action == ACTION_CLOUDFLARE:
                if self.fsm.can_transition_to(S.WAITING_CLOUDFLARE):
                    self._log("☁️ Waiting for Cloudflare check")
                    return await self._commit(S.WAITING_CLOUDFLARE)
                return False
        except RegflowError as e:
            self.logger.error(f"Failed to handle {action}: {e}")
            return False

        self.logger.warning(f"Ignoring unknown agent message: {message!r}")
        return False

    # ---- verification ----

    def start_verification_monitoring(self) -> asyncio.Task:
        if self._monitor_task is not None and not self._monitor_task.done():
            return self._monitor_task
        metadata = self.fsm.get_metadata()
        self.poller = self.poller_factory(metadata.get("session_id"), metadata.get("email"))
        self._monitor_task = asyncio.get_running_loop().create_task(self._monitor(self.poller))
        return self._monitor_task

    async def _monitor(self, poller: VerificationPoller):
        metadata = self.fsm.get_metadata()
        email, session_id = metadata.get("email"), metadata.get("session_id")
        try:
            await self.api_client.start_monitor(email, session_id)
        except RegflowError as e:
            self.logger.warning(f"Could not arm remote monitor: {e}")
        if poller.is_stopped:
            # stopped while the remote monitor was being armed
            return

        try:
            code = await poller.run_with_retries(self.fsm, rearm=self._rearm, commit=self._commit)
        except RegflowError as e:
            self.logger.error(f"Verification monitoring aborted: {e}")
            return
        if code is not None:
            await self._complete(code)
            return

        if self.fsm.is_error():
            reason = self.fsm.get_metadata().get("reason")
            self._log(f"❌ Registration failed: {reason}")
            if email:
                self.record_cache.update_status(email, RecordStatus.FAILED)
                try:
                    await self.api_client.update_account(email, RecordStatus.FAILED, error_message=reason)
                except RegflowError as e:
                    self.logger.warning(f"Could not mark remote record failed: {e}")

    async def _rearm(self, fsm: RegistrationStateMachine) -> bool:
        """Re-enter page detection after a code timeout"""
        self._log(f"🔄 Retrying ({fsm.retry_progress()})")
        if not await self._commit(S.DETECTING_PAGE, {"rearmed": True}):
            return False
        return await self._fill_form(start_monitor=False)

    async def _complete(self, code: VerificationCode) -> bool:
        completed_at = datetime.now(timezone.utc).isoformat()
        if not await self._commit(S.COMPLETED, {"verification_code": code.code, "completed_at": completed_at}):
            return False
        self._log(f"🎉 Registration completed, code {code.code}")
        self._stop_poller()

        email = self.fsm.get_metadata().get("email")
        if email:
            self.record_cache.update_status(email, RecordStatus.VERIFIED, code.code)
            try:
                await self.api_client.update_account(email, RecordStatus.VERIFIED, verification_code=code.code)
            except RegflowError as e:
                self.logger.warning(f"Could not mark remote record verified: {e}")

        response = await self.page_agent.fill_verification_code(code.code)
        if not response.success:
            self.logger.warning(f"Code could not be entered on the page: {response.error}")
        return True

    async def wait_for_monitoring(self):
        """Block until the running monitoring task (if any) finishes"""
        if self._monitor_task is not None:
            await asyncio.gather(self._monitor_task, return_exceptions=True)

    def _stop_poller(self):
        if self.poller is not None:
            self.poller.stop()

    async def stop_monitoring(self):
        """Manual stop: cancel monitoring, reset and clear persisted state"""
        self._stop_poller()
        current = asyncio.current_task()
        if self._monitor_task is not None and self._monitor_task is not current:
            await asyncio.gather(self._monitor_task, return_exceptions=True)
        await self._clear()
        self._log("⏹️ Monitoring stopped, state cleared")

    async def reset_registration(self):
        await self.stop_monitoring()

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.fsm.get_state().value,
            "label": self.fsm.get_state_text(),
            "progress": self.fsm.get_progress(),
            "retry": self.fsm.retry_progress(),
            "metadata": {k: v for k, v in self.fsm.get_metadata().items() if k != "password"},
            "monitoring": self._monitor_task is not None and not self._monitor_task.done(),
        }
