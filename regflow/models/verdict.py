"""
Validation verdict and reconciliation signal models

Everything here is ephemeral: computed by the smart validator and never
persisted.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class RealStatus(str, Enum):
    """Real-world status of a saved registration"""
    INVALID = "invalid"
    VERIFIED = "verified"
    CODE_RECEIVED = "code_received"
    EXPIRED = "expired"
    SYNC_FAILED = "sync_failed"
    INCOMPLETE = "incomplete"
    IN_PROGRESS = "in_progress"
    UNKNOWN = "unknown"


class Recommendation(str, Enum):
    """Recovery action recommended for a saved registration"""
    CLEAR = "clear"
    CONTINUE = "continue"
    RETRY = "retry"
    NONE = "none"


@dataclass
class RemoteStatus:
    """Authoritative remote status of the account"""
    exists: bool = False
    status: Optional[str] = None
    verified_at: Optional[str] = None
    created_at: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CodeSignal:
    """Whether a verification code was already delivered"""
    exists: bool = False
    code: Optional[str] = None
    received_at: Optional[str] = None
    error: Optional[str] = None


@dataclass
class TimeValidity:
    elapsed: float = 0.0
    is_expired: bool = False
    is_warning: bool = False
    reason: str = ""


@dataclass
class StateConsistency:
    is_complete: bool = False
    has_all_fields: bool = False
    reason: str = ""


@dataclass
class ValidationSignals:
    """The four independent signals the decision is made from"""
    remote_status: RemoteStatus = field(default_factory=RemoteStatus)
    verification_code: CodeSignal = field(default_factory=CodeSignal)
    time_validity: TimeValidity = field(default_factory=TimeValidity)
    state_consistency: StateConsistency = field(default_factory=StateConsistency)


@dataclass
class ValidationVerdict:
    is_valid: bool
    real_status: RealStatus
    reason: str
    need_reset: bool
    recommendation: Recommendation = Recommendation.NONE
    verification_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["real_status"] = self.real_status.value
        data["recommendation"] = self.recommendation.value
        return data


@dataclass
class RecommendationResult:
    """Outcome of executing a recommendation"""
    action: str
    message: str
    verification_code: Optional[str] = None


@dataclass
class SmartCheckResult:
    validation: ValidationVerdict
    result: RecommendationResult
    can_start_new: bool
