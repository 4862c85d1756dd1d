"""
Health diagnostics for the registration engine

Scores three components and derives recommendations:
- local: state machine and state store readable
- remote: account service ``/health``
- sync: the cross-context lock is not held past its staleness window
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..exceptions import RegflowError
from ..models.registration import to_epoch_seconds
from .api_client import AccountServiceClient
from .automation.registration_state_machine import STATE_STORAGE_KEY, RegistrationStateMachine
from .state_store import StateStore
from .state_sync import LOCK_KEY

STATUS_SCORES = {
    "healthy": 100,
    "warning": 50,
    "error": 0,
    "unknown": 25,
}

STUCK_AFTER = 10 * 60  # seconds


@dataclass
class ComponentHealth:
    status: str = "unknown"
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class Recommendation:
    priority: str
    title: str
    description: str
    solutions: List[str] = field(default_factory=list)


@dataclass
class HealthReport:
    components: Dict[str, ComponentHealth]
    score: int
    status: str
    recommendations: List[Recommendation]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "status": self.status,
            "components": {
                name: {"status": c.status, "details": c.details, "error": c.error}
                for name, c in self.components.items()
            },
            "recommendations": [vars(r) for r in self.recommendations],
        }


class HealthService:
    """Runs the health checks and builds recommendations"""

    def __init__(self, fsm: RegistrationStateMachine, store: StateStore,
                 api_client: AccountServiceClient,
                 lock_stale_after: float = 10.0,
                 clock: Callable[[], float] = time.time):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.fsm = fsm
        self.store = store
        self.api_client = api_client
        self.lock_stale_after = lock_stale_after
        self.clock = clock

    async def check_local(self) -> ComponentHealth:
        result = ComponentHealth()
        try:
            result.details["state"] = self.fsm.get_state().value
            record = await self.store.get(STATE_STORAGE_KEY)
            result.details["persisted_state"] = record.get("current_state") if record else None
            result.status = "healthy"
        except RegflowError as e:
            result.status = "error"
            result.error = str(e)
        return result

    async def check_remote(self) -> ComponentHealth:
        result = ComponentHealth()
        try:
            data = await self.api_client.health()
        except RegflowError as e:
            result.status = "error"
            result.error = str(e)
            return result
        result.details = dict(data)
        result.status = "healthy" if data.get("status") in ("ok", "healthy") else "warning"
        return result

    async def check_sync(self) -> ComponentHealth:
        result = ComponentHealth()
        try:
            lock = await self.store.get(LOCK_KEY)
        except RegflowError as e:
            result.status = "error"
            result.error = str(e)
            return result

        if not lock:
            result.details["lock"] = "free"
            result.status = "healthy"
            return result

        age = self.clock() - (lock.get("acquired_at") or 0) / 1000.0
        result.details.update({"lock": "held", "holder_id": lock.get("holder_id"), "age": round(age, 1)})
        result.status = "warning" if age > self.lock_stale_after else "healthy"
        return result

    @staticmethod
    def score(components: Dict[str, ComponentHealth]) -> int:
        if not components:
            return 0
        total = sum(STATUS_SCORES.get(c.status, 0) for c in components.values())
        return round(total / len(components))

    @staticmethod
    def overall_status(score: int) -> str:
        if score >= 80:
            return "healthy"
        if score >= 50:
            return "warning"
        return "error"

    def build_recommendations(self, components: Dict[str, ComponentHealth]) -> List[Recommendation]:
        recommendations = []

        remote = components.get("remote")
        if remote and remote.status == "error":
            recommendations.append(Recommendation(
                priority="high",
                title="Account service unreachable",
                description="Codes cannot be received and accounts cannot be saved",
                solutions=["Check the network connection", f"Check api.base_url ({self.api_client.config.base_url})"],
            ))
        elif remote and remote.status == "warning":
            recommendations.append(Recommendation(
                priority="medium",
                title="Account service degraded",
                description="Verification codes may not arrive automatically",
                solutions=["Check the service status", "Enter the code manually if needed"],
            ))

        local = components.get("local")
        if local and local.status == "error":
            recommendations.append(Recommendation(
                priority="high",
                title="State store not readable",
                description="Saved progress cannot be restored",
                solutions=["Check engine.state_dir permissions"],
            ))

        sync = components.get("sync")
        if sync and sync.status == "warning":
            recommendations.append(Recommendation(
                priority="medium",
                title="Stale state lock",
                description=f"Lock held by {sync.details.get('holder_id')} for {sync.details.get('age')}s",
                solutions=["It is reclaimed automatically on the next locked operation"],
            ))

        if self.fsm.is_in_progress():
            created = to_epoch_seconds(self.fsm.get_metadata().get("created_at"))
            if created is not None and self.clock() - created > STUCK_AFTER:
                recommendations.append(Recommendation(
                    priority="medium",
                    title="Registration running for a long time",
                    description="The current registration may be stuck",
                    solutions=["Reset the state and start again"],
                ))
        return recommendations

    async def full_health_check(self) -> HealthReport:
        components = {
            "local": await self.check_local(),
            "remote": await self.check_remote(),
            "sync": await self.check_sync(),
        }
        score = self.score(components)
        report = HealthReport(
            components=components,
            score=score,
            status=self.overall_status(score),
            recommendations=self.build_recommendations(components),
        )
        self.logger.info(f"Health check complete: {report.status} ({score})")
        return report
