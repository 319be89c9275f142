"""
Abstract base class for external field classifiers.
A classifier is an opaque, paid collaborator: it gets one source field and
the target schema, and may suggest a target with a confidence.
"""

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, Field

from app.schemas.imports import SourceFieldDescriptor, TargetSchema


class ClassifierSuggestion(BaseModel):
    """A single suggestion returned by an external classifier."""
    target_field: Optional[str] = None
    confidence: int = Field(ge=0, le=100, default=0)
    reasoning: str = ""


class FieldClassifier(ABC):
    """
    Abstract base class for all external classifiers.

    Every classifier must:
    1. Accept a source field descriptor and a target schema
    2. Return a ClassifierSuggestion, or None when it has no opinion
    3. Report its name, version and per-call cost
    4. Raise ClassifierError (or ExternalClassifierTimeout) on failure
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        ...

    @property
    @abstractmethod
    def provider_version(self) -> str:
        ...

    @property
    @abstractmethod
    def cost_per_call_usd(self) -> float:
        ...

    @abstractmethod
    async def suggest(
        self,
        field: SourceFieldDescriptor,
        schema: TargetSchema,
    ) -> Optional[ClassifierSuggestion]:
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    async def aclose(self) -> None:
        """Release any held connections."""
        return None


class ClassifierError(Exception):
    """Raised when an external classifier fails."""

    def __init__(self, provider_name: str, error_code: str, message: str):
        self.provider_name = provider_name
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{provider_name}] {error_code}: {message}")


class ExternalClassifierTimeout(ClassifierError):
    """Classifier did not answer within its timeout. Recovered by fallback."""

    def __init__(self, provider_name: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            provider_name,
            "ERR_CLASSIFIER_TIMEOUT",
            f"No response within {timeout_seconds}s",
        )
