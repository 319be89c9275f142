"""
Tests for the HTTP field classifier, using httpx's mock transport.
"""

import httpx
import pytest

from app.engines.base import ClassifierError
from app.engines.http_classifier import HttpFieldClassifier
from app.pipeline.mapping_cache import MappingCache
from app.pipeline.mapping_engine import MappingEngine
from app.schemas.imports import SourceFieldDescriptor, TargetSchema

URL = "http://classifier.test/classify"


def classifier_returning(status_code=200, **kwargs) -> HttpFieldClassifier:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, **kwargs)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpFieldClassifier(url=URL, client=client, cost_per_call=0.0)


@pytest.fixture
def price_field():
    return SourceFieldDescriptor(name="zq1")


@pytest.fixture
def price_schema():
    return TargetSchema.from_names(["price"])


class TestSuggest:

    async def test_valid_response(self, price_field, price_schema):
        classifier = classifier_returning(json={"target_field": "price", "confidence": 72.6, "reasoning": "numeric"})
        suggestion = await classifier.suggest(price_field, price_schema)
        assert suggestion.target_field == "price"
        assert suggestion.confidence == 72
        assert suggestion.reasoning == "numeric"

    async def test_confidence_is_clamped(self, price_field, price_schema):
        classifier = classifier_returning(json={"target_field": "price", "confidence": 250})
        suggestion = await classifier.suggest(price_field, price_schema)
        assert suggestion.confidence == 100

    async def test_unknown_target_is_no_suggestion(self, price_field, price_schema):
        classifier = classifier_returning(json={"target_field": "colour", "confidence": 90})
        assert await classifier.suggest(price_field, price_schema) is None

    @pytest.mark.parametrize("body", [
        {"target_field": "price", "confidence": "high"},
        {"target_field": "price", "confidence": None},
        {"target_field": "price", "confidence": "nan"},
        [{"target_field": "price", "confidence": 80}],
        "price",
    ])
    async def test_malformed_body_is_a_classifier_error(self, body, price_field, price_schema):
        classifier = classifier_returning(json=body)
        with pytest.raises(ClassifierError) as exc_info:
            await classifier.suggest(price_field, price_schema)
        assert exc_info.value.error_code == "ERR_BAD_RESPONSE"

    async def test_non_json_body(self, price_field, price_schema):
        classifier = classifier_returning(text="<html>oops</html>")
        with pytest.raises(ClassifierError) as exc_info:
            await classifier.suggest(price_field, price_schema)
        assert exc_info.value.error_code == "ERR_BAD_RESPONSE"

    async def test_http_error_status(self, price_field, price_schema):
        classifier = classifier_returning(status_code=503, text="unavailable")
        with pytest.raises(ClassifierError) as exc_info:
            await classifier.suggest(price_field, price_schema)
        assert exc_info.value.error_code == "ERR_HTTP_503"


class TestMalformedResponseDuringMapping:

    async def test_mapping_continues_without_suggestion(self, repository, price_field, price_schema):
        classifier = classifier_returning(json={"target_field": "price", "confidence": "high"})
        engine = MappingEngine(MappingCache(repository), classifier=classifier, external_enabled=True)

        result = await engine.resolve([price_field], price_schema)
        assert result.mappings[0].target_field is None
        assert result.metadata.external_calls == 1
