"""
HTTP field classifier.

Posts one field (name, types, samples) plus the candidate targets to a
classification endpoint and expects JSON back:

    {"target_field": "price", "confidence": 72, "reasoning": "..."}

No retries: a failed or slow call is abandoned and the mapping engine falls
back to the best non-external candidate.
"""

from typing import Optional

import httpx
import structlog

from app.config import settings
from app.engines.base import (
    ClassifierError,
    ClassifierSuggestion,
    ExternalClassifierTimeout,
    FieldClassifier,
)
from app.schemas.imports import SourceFieldDescriptor, TargetSchema

logger = structlog.get_logger(__name__)


class HttpFieldClassifier(FieldClassifier):

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        cost_per_call: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url or settings.CLASSIFIER_URL
        self.api_key = api_key or settings.CLASSIFIER_API_KEY
        self.model = model or settings.CLASSIFIER_MODEL
        self.timeout = timeout or settings.CLASSIFIER_TIMEOUT_SECONDS
        self._cost_per_call = (
            cost_per_call if cost_per_call is not None else settings.CLASSIFIER_COST_PER_CALL_USD
        )
        self._client = client or httpx.AsyncClient(timeout=self.timeout)

    @property
    def provider_name(self) -> str:
        return "http_classifier"

    @property
    def provider_version(self) -> str:
        return self.model

    @property
    def cost_per_call_usd(self) -> float:
        return self._cost_per_call

    def is_configured(self) -> bool:
        return bool(self.url)

    def _build_payload(self, field: SourceFieldDescriptor, schema: TargetSchema) -> dict:
        return {
            "model": self.model,
            "field": {
                "name": field.name,
                "expanded_name": field.expanded_name,
                "data_type": field.data_type.value,
                "semantic_type": field.semantic_type.value if field.semantic_type else None,
                "samples": field.sample_values[:5],
            },
            "targets": [
                {"name": t.name, "type": t.data_type.value, "description": t.description}
                for t in schema.fields
            ],
        }

    async def suggest(
        self,
        field: SourceFieldDescriptor,
        schema: TargetSchema,
    ) -> Optional[ClassifierSuggestion]:
        if not self.is_configured():
            raise ClassifierError(self.provider_name, "ERR_NOT_CONFIGURED", "CLASSIFIER_URL not set")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = await self._client.post(
                self.url,
                json=self._build_payload(field, schema),
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise ExternalClassifierTimeout(self.provider_name, self.timeout) from e
        except httpx.RequestError as e:
            raise ClassifierError(self.provider_name, "ERR_REQUEST", str(e)) from e

        if response.status_code != 200:
            raise ClassifierError(
                self.provider_name,
                f"ERR_HTTP_{response.status_code}",
                response.text[:200],
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ClassifierError(self.provider_name, "ERR_BAD_RESPONSE", "Response is not JSON") from e

        if not isinstance(data, dict):
            raise ClassifierError(self.provider_name, "ERR_BAD_RESPONSE", "Response is not a JSON object")

        target = data.get("target_field")
        if not isinstance(target, str) or schema.get(target) is None:
            logger.debug("classifier_no_suggestion", field=field.name, returned=target)
            return None

        raw_confidence = data.get("confidence", 0)
        try:
            confidence = int(float(raw_confidence))
        except (TypeError, ValueError, OverflowError) as e:
            raise ClassifierError(
                self.provider_name,
                "ERR_BAD_RESPONSE",
                f"Confidence is not a number: {raw_confidence!r}"[:200],
            ) from e

        return ClassifierSuggestion(
            target_field=target,
            confidence=max(0, min(100, confidence)),
            reasoning=str(data.get("reasoning") or "")[:500],
        )

    async def health_check(self) -> bool:
        if not self.is_configured():
            return False
        try:
            response = await self._client.get(self.url)
            return response.status_code < 500
        except httpx.RequestError:
            return False

    async def aclose(self) -> None:
        await self._client.aclose()
