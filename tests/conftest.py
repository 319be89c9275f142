"""
Shared test fixtures.
"""

import pytest

from app.models.enums import RiskLevel
from app.pipeline.batch_committer import BatchCommitter, InMemoryRecordWriter
from app.pipeline.confidence_scorer import ConfidenceResult
from app.pipeline.orchestrator import WorkflowOrchestrator
from app.review.approval_router import ApprovalRouter, RoutingRule
from app.schemas.imports import TargetSchema
from app.storage.repository import InMemoryRepository


SCENARIO_CSV = (
    b"prod_name,amt,sku\n"
    b"Blue Mug,19.99,ABC-001\n"
    b"Red Mug,5.00,ABC-002\n"
    b"Green Mug,12.50,ABC-003\n"
)


def _routing(minutes: float) -> dict:
    return {
        RiskLevel.LOW: RoutingRule(minutes, ("data_analyst",), ("senior_analyst",), priority=7),
        RiskLevel.MEDIUM: RoutingRule(minutes, ("senior_analyst",), ("team_lead",), priority=5),
        RiskLevel.HIGH: RoutingRule(minutes, ("team_lead",), ("director",), priority=3),
        RiskLevel.CRITICAL: RoutingRule(minutes, ("director",), ("executive",), priority=1),
    }


def _fixed_score(aggregate: float):
    def scorer(*args, **kwargs) -> ConfidenceResult:
        return ConfidenceResult(aggregate_confidence=aggregate, validation_status="WARN")
    return scorer


@pytest.fixture
def scenario_csv() -> bytes:
    return SCENARIO_CSV


@pytest.fixture
def scenario_schema() -> TargetSchema:
    return TargetSchema.from_names(["name", "price", "sku"])


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def writer() -> InMemoryRecordWriter:
    return InMemoryRecordWriter()


@pytest.fixture
def make_orchestrator(repository, writer):
    """Factory for orchestrators sharing the test repository and writer."""

    def factory(**overrides) -> WorkflowOrchestrator:
        routing = overrides.pop("routing", None)
        kwargs = {
            "committer": BatchCommitter(writer, repository, backoff_seconds=0.0),
            "router": ApprovalRouter(repository, routing=routing, approver_pool={}),
        }
        kwargs.update(overrides)
        return WorkflowOrchestrator(repository, **kwargs)

    return factory


@pytest.fixture
def fast_routing() -> dict:
    """Routing table with deadlines short enough to expire inside a test."""
    return _routing(0.0005)


@pytest.fixture
def fixed_score():
    """Factory for scorers that ignore their inputs and report a fixed aggregate."""
    return _fixed_score
