"""
Per-session cost instrumentation and budget gate for the external classifier.
Instrument, don't estimate: every paid call is recorded with its real latency.
"""

from typing import TYPE_CHECKING, Optional

import structlog

from app.errors import CostLimitExceeded
from app.observability.metrics import external_api_cost_usd, external_api_latency_seconds

if TYPE_CHECKING:
    from app.storage.repository import ImportRepository

logger = structlog.get_logger(__name__)


class CostTracker:
    """Track spend on external calls for one session and enforce its ceiling."""

    def __init__(
        self,
        session_id: str,
        ceiling_usd: float,
        repository: Optional["ImportRepository"] = None,
    ):
        self.session_id = session_id
        self.ceiling_usd = ceiling_usd
        self.repository = repository
        self._events: list[dict] = []

    @property
    def spent_usd(self) -> float:
        return sum(e["cost_usd"] for e in self._events)

    def remaining_usd(self) -> float:
        return max(0.0, self.ceiling_usd - self.spent_usd)

    def ensure_budget(self, cost_usd: float) -> None:
        """Raise CostLimitExceeded if a call costing `cost_usd` would pass the ceiling."""
        # Small epsilon so ten calls at 0.0001 fit a 0.001 ceiling despite float drift
        if self.spent_usd + cost_usd > self.ceiling_usd + 1e-12:
            logger.warning(
                "cost_limit_reached",
                session_id=self.session_id,
                spent_usd=round(self.spent_usd, 6),
                ceiling_usd=self.ceiling_usd,
            )
            raise CostLimitExceeded(self.session_id, self.spent_usd, self.ceiling_usd)

    async def record(
        self,
        provider: str,
        operation: str,
        cost_usd: float = 0.0,
        latency_ms: int = 0,
        field_count: int = 1,
        outcome: str = "ok",
    ) -> None:
        """Record a cost event to the repository and Prometheus."""
        event = {
            "session_id": self.session_id,
            "provider": provider,
            "operation": operation,
            "field_count": field_count,
            "cost_usd": cost_usd,
            "latency_ms": latency_ms,
            "outcome": outcome,
        }
        self._events.append(event)

        external_api_cost_usd.labels(provider=provider).inc(cost_usd)
        external_api_latency_seconds.labels(provider=provider).observe(latency_ms / 1000.0)

        if self.repository is not None:
            await self.repository.record_cost_event(event)

        logger.info(
            "cost_event_recorded",
            session_id=self.session_id,
            provider=provider,
            operation=operation,
            cost_usd=cost_usd,
            latency_ms=latency_ms,
            outcome=outcome,
        )

    def summary(self) -> dict:
        """Return summary of all cost events for this session."""
        return {
            "total_cost_usd": round(self.spent_usd, 6),
            "ceiling_usd": self.ceiling_usd,
            "remaining_usd": round(self.remaining_usd(), 6),
            "event_count": len(self._events),
            "events": self._events,
        }
