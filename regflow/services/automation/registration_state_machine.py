"""
Registration state machine for the account creation workflow

Owns the canonical workflow state and its transition legality. Transitions are
registered with the ``transitions`` framework; the table below is the single
source of truth for which moves are legal.

State Flow Diagram:
==================

    [IDLE] ──► [PREPARING] ──► [DETECTING_PAGE] ──┬──► [FILLING_STEP1] ──► [WAITING_STEP1_SUBMIT]
                                    ▲             │          │                      │
                                    │             └──► [FILLING_STEP2] ◄────────────┘
                                    │                        │
                                    │                        ▼
                                    │               [WAITING_CLOUDFLARE]
                                    │                        │
                                    │                        ▼
                               [RETRYING] ◄──────── [WAITING_VERIFICATION] ──► [COMPLETED] ──► [IDLE]
                                    ▲                        │
                                    └──────── [ERROR] ◄──────┘

    Every in-flight state may fall to ERROR; the filling and waiting states may
    also go to RETRYING directly.

Retry budget:
- ``retry_count`` increments on entering RETRYING
- it returns to 0 on entering IDLE, PREPARING or COMPLETED (an attempt starts or ends)
- every other transition keeps it, so a retry cycle through DETECTING_PAGE and
  ERROR cannot refill the budget
"""

import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from transitions import Machine

from ..callbacks import ListenerRegistry, Unsubscribe
from ..state_store import StateStore

STATE_STORAGE_KEY = "registrationState"


class RegistrationState(str, Enum):
    """States for the registration workflow"""
    IDLE = "idle"
    PREPARING = "preparing"
    DETECTING_PAGE = "detecting_page"
    FILLING_STEP1 = "filling_step1"
    WAITING_STEP1_SUBMIT = "waiting_step1_submit"
    FILLING_STEP2 = "filling_step2"
    WAITING_CLOUDFLARE = "waiting_cloudflare"
    WAITING_VERIFICATION = "waiting_verification"
    COMPLETED = "completed"
    ERROR = "error"
    RETRYING = "retrying"


S = RegistrationState

TRANSITIONS: Dict[RegistrationState, List[RegistrationState]] = {
    S.IDLE: [S.PREPARING],
    S.PREPARING: [S.DETECTING_PAGE, S.ERROR],
    S.DETECTING_PAGE: [S.FILLING_STEP1, S.FILLING_STEP2, S.ERROR],
    S.FILLING_STEP1: [S.WAITING_STEP1_SUBMIT, S.WAITING_VERIFICATION, S.ERROR, S.RETRYING],
    S.WAITING_STEP1_SUBMIT: [S.FILLING_STEP2, S.WAITING_VERIFICATION, S.ERROR, S.RETRYING],
    S.FILLING_STEP2: [S.WAITING_CLOUDFLARE, S.WAITING_VERIFICATION, S.ERROR, S.RETRYING],
    S.WAITING_CLOUDFLARE: [S.WAITING_VERIFICATION, S.ERROR, S.RETRYING],
    S.WAITING_VERIFICATION: [S.COMPLETED, S.ERROR],
    S.ERROR: [S.RETRYING, S.IDLE],
    S.RETRYING: [S.DETECTING_PAGE, S.ERROR, S.IDLE],
    S.COMPLETED: [S.IDLE],
}

PROGRESS: Dict[RegistrationState, int] = {
    S.IDLE: 0,
    S.PREPARING: 10,
    S.DETECTING_PAGE: 20,
    S.FILLING_STEP1: 30,
    S.WAITING_STEP1_SUBMIT: 40,
    S.FILLING_STEP2: 50,
    S.WAITING_CLOUDFLARE: 70,
    S.WAITING_VERIFICATION: 85,
    S.COMPLETED: 100,
    S.ERROR: 0,
    S.RETRYING: 15,
}

STATE_TEXT: Dict[RegistrationState, str] = {
    S.IDLE: "Ready",
    S.PREPARING: "Preparing account details...",
    S.DETECTING_PAGE: "Detecting registration page...",
    S.FILLING_STEP1: "Filling step 1 (name and email)...",
    S.WAITING_STEP1_SUBMIT: "Waiting for step 1 to submit...",
    S.FILLING_STEP2: "Filling step 2 (password)...",
    S.WAITING_CLOUDFLARE: "Waiting for Cloudflare check...",
    S.WAITING_VERIFICATION: "Waiting for verification code...",
    S.COMPLETED: "Registration completed",
    S.ERROR: "Registration failed",
    S.RETRYING: "Retrying...",
}

IN_PROGRESS_STATES = frozenset(s for s in RegistrationState if s not in (S.IDLE, S.COMPLETED, S.ERROR))
RETRY_RESET_STATES = frozenset((S.IDLE, S.PREPARING, S.COMPLETED))

StateListener = Callable[[RegistrationState, RegistrationState, Dict[str, Any]], None]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RegistrationStateMachine:
    """
    Workflow state machine with metadata, history and retry accounting

    ``transition()`` never raises for an illegal move: it logs and returns
    False without touching any state. The machine is not reentrant; a
    transition requested by a listener while another transition is still
    notifying is rejected.
    """

    def __init__(self, store: Optional[StateStore] = None, max_retries: int = 3,
                 clock: Callable[[], float] = time.time):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.store = store
        self.clock = clock

        self.previous_state: Optional[RegistrationState] = None
        self.retry_count = 0
        self.max_retries = max_retries
        self.metadata: Dict[str, Any] = {}
        self.history: List[Dict[str, Any]] = []

        self._listeners = ListenerRegistry("state")
        self._notifying = False

        # transitions stores the state on ``fsm_state`` so its generated
        # is_* helpers do not collide with the query methods below
        self.machine = Machine(
            model=self,
            states=[s.value for s in RegistrationState],
            initial=S.IDLE.value,
            model_attribute="fsm_state",
            auto_transitions=False,
            ignore_invalid_triggers=True,
        )
        self._setup_transitions()

    def _setup_transitions(self):
        """Register one ``to_<state>`` trigger per destination"""
        sources_by_target: Dict[RegistrationState, List[str]] = {}
        for source, targets in TRANSITIONS.items():
            for target in targets:
                sources_by_target.setdefault(target, []).append(source.value)

        for target, sources in sources_by_target.items():
            self.machine.add_transition(trigger=f"to_{target.value}", source=sources, dest=target.value)

    # ---- queries ----

    def get_state(self) -> RegistrationState:
        return RegistrationState(self.fsm_state)

    def get_state_text(self) -> str:
        state = self.get_state()
        if state == S.RETRYING:
            return f"{STATE_TEXT[state]} ({self.retry_count}/{self.max_retries})"
        return STATE_TEXT[state]

    def get_metadata(self) -> Dict[str, Any]:
        return dict(self.metadata)

    def get_history(self) -> List[Dict[str, Any]]:
        return [dict(entry) for entry in self.history]

    def get_progress(self) -> int:
        return PROGRESS[self.get_state()]

    def can_transition_to(self, target: Union[RegistrationState, str]) -> bool:
        try:
            target = RegistrationState(target)
        except ValueError:
            return False
        return target in TRANSITIONS[self.get_state()]

    def should_auto_restore(self) -> bool:
        return self.get_state() in IN_PROGRESS_STATES

    def is_in_progress(self) -> bool:
        return self.get_state() in IN_PROGRESS_STATES

    def is_idle(self) -> bool:
        return self.get_state() == S.IDLE

    def is_completed(self) -> bool:
        return self.get_state() == S.COMPLETED

    def is_error(self) -> bool:
        return self.get_state() == S.ERROR

    def can_start_new_registration(self) -> bool:
        return self.get_state() in (S.IDLE, S.COMPLETED, S.ERROR)

    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def retry_progress(self) -> str:
        return f"{self.retry_count}/{self.max_retries}"

    # ---- transitions ----

    def transition(self, target: Union[RegistrationState, str], metadata: Optional[Dict[str, Any]] = None) -> bool:
        """
        Move to ``target`` if the table allows it

        Args:
            target: destination state
            metadata: patch merged (shallowly) into the machine metadata

        Returns:
            bool: True if the transition was committed
        """
        try:
            target = RegistrationState(target)
        except ValueError:
            self.logger.error(f"❌ Unknown target state: {target!r}")
            return False

        if self._notifying:
            self.logger.warning(f"Rejected transition to {target.value}: another transition is still notifying")
            return False

        old_state = self.get_state()
        if target not in TRANSITIONS[old_state]:
            self.logger.error(f"❌ Illegal transition: {old_state.value} -> {target.value}")
            return False

        if not self.trigger(f"to_{target.value}"):
            self.logger.error(f"❌ Transition engine refused: {old_state.value} -> {target.value}")
            return False

        patch = dict(metadata or {})
        self.previous_state = old_state
        self.metadata.update(patch)
        self.history.append({
            "state": target.value,
            "timestamp": _now_iso(),
            "metadata": patch,
        })

        if target == S.RETRYING:
            self.retry_count += 1
        elif target in RETRY_RESET_STATES:
            self.retry_count = 0

        self.logger.info(f"State: {old_state.value} -> {target.value}")

        self._notifying = True
        try:
            self._listeners.notify(target, old_state, patch)
        finally:
            self._notifying = False
        return True

    def reset(self):
        """Return to IDLE and drop metadata, history and the retry count"""
        self.machine.set_state(S.IDLE.value, model=self)
        self.previous_state = None
        self.retry_count = 0
        self.metadata = {}
        self.history = []
        self.logger.debug("State machine reset")

    # ---- listeners ----

    def add_listener(self, listener: StateListener) -> Unsubscribe:
        return self._listeners.add(listener)

    def remove_listener(self, listener: StateListener) -> bool:
        return self._listeners.remove(listener)

    # ---- persistence ----

    def to_record(self) -> Dict[str, Any]:
        return {
            "current_state": self.get_state().value,
            "previous_state": self.previous_state.value if self.previous_state else None,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "metadata": dict(self.metadata),
            "history": self.get_history(),
            "timestamp": int(self.clock() * 1000),
        }

    def from_record(self, record: Dict[str, Any]) -> bool:
        """Restore from a persisted record, returns False if it is unusable"""
        try:
            current = RegistrationState(record["current_state"])
            previous = record.get("previous_state")
            previous = RegistrationState(previous) if previous else None
        except (KeyError, ValueError, TypeError) as e:
            self.logger.warning(f"Ignoring unusable state record: {e}")
            return False

        self.machine.set_state(current.value, model=self)
        self.previous_state = previous
        self.retry_count = int(record.get("retry_count", 0))
        self.max_retries = int(record.get("max_retries", self.max_retries))
        self.metadata = dict(record.get("metadata") or {})
        self.history = [dict(entry) for entry in record.get("history") or []]
        return True

    async def save_to_storage(self) -> Dict[str, Any]:
        record = self.to_record()
        if self.store is not None:
            await self.store.set(STATE_STORAGE_KEY, record)
        return record

    async def load_from_storage(self) -> bool:
        if self.store is None:
            return False
        record = await self.store.get(STATE_STORAGE_KEY)
        if not record:
            return False
        loaded = self.from_record(record)
        if loaded:
            self.logger.info(f"Restored state: {self.get_state().value}")
        return loaded

    async def clear_storage(self):
        if self.store is not None:
            await self.store.remove(STATE_STORAGE_KEY)
