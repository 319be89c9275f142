"""
Stub classifier for testing the external strategy plumbing.
Answers from a fixed lookup table without any network call; can be told to
hang or fail to exercise the timeout and fallback paths.
"""

import asyncio
from typing import Optional

from app.engines.base import ClassifierError, ClassifierSuggestion, FieldClassifier
from app.schemas.imports import SourceFieldDescriptor, TargetSchema


class StubClassifier(FieldClassifier):
    """Fake classifier keyed by source field name."""

    def __init__(
        self,
        answers: Optional[dict[str, tuple[str, int]]] = None,
        delay_seconds: float = 0.0,
        fail: bool = False,
        cost_per_call: float = 0.0001,
    ):
        self.answers = answers or {}
        self.delay_seconds = delay_seconds
        self.fail = fail
        self._cost_per_call = cost_per_call
        self.calls: list[str] = []

    @property
    def provider_name(self) -> str:
        return "stub"

    @property
    def provider_version(self) -> str:
        return "0.1.0"

    @property
    def cost_per_call_usd(self) -> float:
        return self._cost_per_call

    async def suggest(
        self,
        field: SourceFieldDescriptor,
        schema: TargetSchema,
    ) -> Optional[ClassifierSuggestion]:
        self.calls.append(field.name)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.fail:
            raise ClassifierError(self.provider_name, "ERR_STUB", "configured to fail")

        answer = self.answers.get(field.name)
        if answer is None or schema.get(answer[0]) is None:
            return None
        target, confidence = answer
        return ClassifierSuggestion(
            target_field=target,
            confidence=confidence,
            reasoning=f"stub answer for {field.name}",
        )

    async def health_check(self) -> bool:
        return not self.fail
