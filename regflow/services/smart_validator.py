"""
Smart validator: reconciles a saved registration against remote truth

Given the locally cached record it gathers four independent signals:

1. remote account status (exists / pending / verified, with verified_at)
2. whether a verification code was already delivered for session + email
3. time validity: elapsed time against a hard expiry and a soft warning
4. local completeness: email, password and status present

and derives a ValidationVerdict. ``make_decision`` is pure; side effects live
in ``execute_recommendation`` so the decision rules can be tested without a
store.

Decision order (first match wins):

    1. remote verified                       -> verified       / clear
    2. code delivered, remote not verified   -> code_received  / continue
    3. expired                               -> expired        / clear
    4. no remote row, local complete         -> sync_failed    / retry
    5. local incomplete                      -> incomplete     / clear
    6. remote pending, not expired           -> in_progress    / continue
    7. anything else                         -> unknown        / clear

Rule 1 discards a successful attempt on purpose so the slot is free for the
next registration.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar, Union

from ..exceptions import RegflowError
from ..models.registration import RegistrationRecord, to_epoch_seconds
from ..models.verdict import (
    CodeSignal, RealStatus, Recommendation, RecommendationResult, RemoteStatus,
    SmartCheckResult, StateConsistency, TimeValidity, ValidationSignals,
    ValidationVerdict,
)
from .api_client import AccountServiceClient
from .automation.registration_state_machine import RegistrationStateMachine

T = TypeVar("T")

RecordLike = Union[RegistrationRecord, Mapping[str, Any], None]


class SmartValidator:
    """Reconciliation engine for saved registration state"""

    def __init__(self, api_client: AccountServiceClient,
                 expire_after: float = 30 * 60,
                 warn_after: float = 10 * 60,
                 call_timeout: float = 3.0,
                 clock: Callable[[], float] = time.time):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.api_client = api_client
        self.expire_after = expire_after
        self.warn_after = warn_after
        self.call_timeout = call_timeout
        self.clock = clock

    @staticmethod
    def _as_dict(record: RecordLike) -> Dict[str, Any]:
        if record is None:
            return {}
        if isinstance(record, RegistrationRecord):
            return record.to_dict()
        return dict(record)

    async def _bounded(self, call: Awaitable[T]) -> T:
        return await asyncio.wait_for(call, timeout=self.call_timeout)

    # ---- signals ----

    async def check_remote_status(self, email: str) -> RemoteStatus:
        try:
            row = await self._bounded(self.api_client.get_account(email))
        except (RegflowError, asyncio.TimeoutError) as e:
            self.logger.warning(f"Remote status check failed for {email}: {str(e) or 'timeout'}")
            return RemoteStatus(exists=False, error=str(e) or "timeout")
        if not row:
            return RemoteStatus(exists=False)
        return RemoteStatus(
            exists=True,
            status=row.get("status"),
            verified_at=row.get("verified_at"),
            created_at=row.get("created_at"),
        )

    async def check_verification_code(self, email: str, session_id: Optional[str]) -> CodeSignal:
        if not session_id:
            return CodeSignal(exists=False)
        try:
            found = await self._bounded(self.api_client.check_code(session_id, email))
        except (RegflowError, asyncio.TimeoutError) as e:
            self.logger.warning(f"Code check failed for {email}: {str(e) or 'timeout'}")
            return CodeSignal(exists=False, error=str(e) or "timeout")
        if not found:
            return CodeSignal(exists=False)
        return CodeSignal(exists=True, code=found.get("code"), received_at=found.get("received_at"))

    def check_time_validity(self, record: Mapping[str, Any]) -> TimeValidity:
        now = self.clock()
        created = to_epoch_seconds(record.get("created_at"))
        elapsed = max(0.0, now - created) if created is not None else 0.0

        is_expired = elapsed > self.expire_after
        is_warning = self.warn_after < elapsed <= self.expire_after
        if is_expired:
            reason = f"Account expired (older than {int(self.expire_after // 60)} minutes)"
        elif is_warning:
            reason = "Account is about to expire"
        else:
            reason = "Within time window"
        return TimeValidity(elapsed=elapsed, is_expired=is_expired, is_warning=is_warning, reason=reason)

    @staticmethod
    def check_state_consistency(record: Mapping[str, Any]) -> StateConsistency:
        has_email = bool(record.get("email"))
        has_password = bool(record.get("password"))
        has_status = bool(record.get("status"))

        if not has_email:
            reason = "Missing email"
        elif not has_password:
            reason = "Missing password"
        elif not has_status:
            reason = "Missing status"
        else:
            reason = "All fields present"
        return StateConsistency(
            is_complete=has_email and has_password,
            has_all_fields=has_email and has_password and has_status,
            reason=reason,
        )

    # ---- decision ----

    @staticmethod
    def make_decision(signals: ValidationSignals) -> ValidationVerdict:
        """Pure decision over the gathered signals"""
        remote = signals.remote_status
        code = signals.verification_code
        timing = signals.time_validity
        local = signals.state_consistency

        if remote.exists and remote.status == "verified":
            return ValidationVerdict(
                is_valid=True, real_status=RealStatus.VERIFIED,
                reason="Account already verified remotely",
                need_reset=True, recommendation=Recommendation.CLEAR,
            )

        if code.exists and not remote.verified_at:
            return ValidationVerdict(
                is_valid=True, real_status=RealStatus.CODE_RECEIVED,
                reason="Verification code already delivered",
                need_reset=False, recommendation=Recommendation.CONTINUE,
                verification_code=code.code,
            )

        if timing.is_expired:
            return ValidationVerdict(
                is_valid=False, real_status=RealStatus.EXPIRED,
                reason=timing.reason,
                need_reset=True, recommendation=Recommendation.CLEAR,
            )

        if not remote.exists and local.is_complete:
            return ValidationVerdict(
                is_valid=False, real_status=RealStatus.SYNC_FAILED,
                reason="Account was never recorded remotely, restart recommended",
                need_reset=True, recommendation=Recommendation.RETRY,
            )

        if not local.is_complete:
            return ValidationVerdict(
                is_valid=False, real_status=RealStatus.INCOMPLETE,
                reason=local.reason,
                need_reset=True, recommendation=Recommendation.CLEAR,
            )

        if remote.exists and remote.status == "pending" and not timing.is_expired:
            return ValidationVerdict(
                is_valid=True, real_status=RealStatus.IN_PROGRESS,
                reason="Registration in progress",
                need_reset=False, recommendation=Recommendation.CONTINUE,
            )

        return ValidationVerdict(
            is_valid=False, real_status=RealStatus.UNKNOWN,
            reason="State unknown, restart recommended",
            need_reset=True, recommendation=Recommendation.CLEAR,
        )

    async def gather_signals(self, record: Mapping[str, Any]) -> ValidationSignals:
        email = record["email"]
        remote_status, verification_code = await asyncio.gather(
            self.check_remote_status(email),
            self.check_verification_code(email, record.get("session_id")),
        )
        return ValidationSignals(
            remote_status=remote_status,
            verification_code=verification_code,
            time_validity=self.check_time_validity(record),
            state_consistency=self.check_state_consistency(record),
        )

    async def validate_account_state(self, record: RecordLike) -> ValidationVerdict:
        """Compute the verdict for a saved record"""
        data = self._as_dict(record)
        email = data.get("email")

        if not email:
            return ValidationVerdict(
                is_valid=False, real_status=RealStatus.INVALID,
                reason="No account information", need_reset=True,
                recommendation=Recommendation.NONE,
            )
        if "@" not in str(email):
            return ValidationVerdict(
                is_valid=False, real_status=RealStatus.INVALID,
                reason=f"Malformed email: {email}", need_reset=True,
                recommendation=Recommendation.CLEAR,
            )

        signals = await self.gather_signals(data)
        verdict = self.make_decision(signals)
        self.logger.info(
            f"🧠 Verdict for {email}: {verdict.real_status.value} -> {verdict.recommendation.value} ({verdict.reason})"
        )
        return verdict

    # ---- side effects ----

    async def execute_recommendation(self, verdict: ValidationVerdict,
                                     fsm: RegistrationStateMachine) -> RecommendationResult:
        recommendation = verdict.recommendation
        if recommendation == Recommendation.CLEAR:
            fsm.reset()
            await fsm.clear_storage()
            return RecommendationResult("cleared", "Stale state cleared, a new registration can start")
        if recommendation == Recommendation.RETRY:
            fsm.reset()
            await fsm.clear_storage()
            return RecommendationResult("retry", "Remote sync failed, state reset for a fresh attempt")
        if recommendation == Recommendation.CONTINUE:
            return RecommendationResult("continue", "Registration in progress can continue",
                                        verification_code=verdict.verification_code)
        return RecommendationResult("none", "Nothing to do")

    async def smart_check_and_handle(self, record: RecordLike,
                                     fsm: RegistrationStateMachine) -> SmartCheckResult:
        verdict = await self.validate_account_state(record)
        result = await self.execute_recommendation(verdict, fsm)
        return SmartCheckResult(
            validation=verdict,
            result=result,
            can_start_new=verdict.need_reset or verdict.real_status == RealStatus.INVALID,
        )
