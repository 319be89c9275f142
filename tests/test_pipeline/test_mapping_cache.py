"""
Tests for the mapping cache.
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.models.enums import StrategyKind
from app.pipeline.mapping_cache import MappingCache, normalize_pattern
from app.schemas.imports import FieldMapping, MappingCacheEntry


def mapping(source="Prod Name", target="name", confidence=85):
    return FieldMapping(
        source_field=source, target_field=target, confidence=confidence, strategy=StrategyKind.FUZZY
    )


@pytest.fixture
def cache(repository):
    return MappingCache(repository)


class TestNormalizePattern:

    def test_strips_case_and_punctuation(self):
        assert normalize_pattern("Prod_Name") == "prodname"
        assert normalize_pattern("prod-name ") == "prodname"


class TestRecordOutcome:

    async def test_success_creates_entry(self, cache, repository):
        touched = await cache.record_outcome([mapping()], success=True)
        assert touched == 1
        entries = await repository.get_cache_entries("prodname")
        assert len(entries) == 1
        assert entries[0].target_field == "name"
        assert entries[0].usage_count == 1

    async def test_low_confidence_mappings_are_not_cached(self, cache, repository):
        touched = await cache.record_outcome([mapping(confidence=50)], success=True)
        assert touched == 0
        assert await repository.get_cache_entries("prodname") == []

    async def test_unmapped_fields_are_not_cached(self, cache):
        unmapped = FieldMapping(source_field="junk")
        assert await cache.record_outcome([unmapped], success=True) == 0

    async def test_rejection_never_creates_entries(self, cache, repository):
        await cache.record_outcome([mapping()], success=False)
        assert await repository.get_cache_entries("prodname") == []

    async def test_rejection_lowers_success_rate(self, cache, repository):
        await cache.record_outcome([mapping()], success=True)
        before = (await repository.get_cache_entries("prodname"))[0]
        await cache.record_outcome([mapping()], success=False)
        after = (await repository.get_cache_entries("prodname"))[0]
        assert after.success_rate < before.success_rate
        assert after.usage_count == 2

    async def test_repeated_success_raises_success_rate(self, cache, repository):
        await cache.record_outcome([mapping()], success=True)
        before = (await repository.get_cache_entries("prodname"))[0]
        await cache.record_outcome([mapping()], success=True)
        after = (await repository.get_cache_entries("prodname"))[0]
        assert after.success_rate >= before.success_rate


class TestScoring:

    def test_recent_entry_is_not_discounted(self, cache):
        entry = MappingCacheEntry(pattern="p", target_field="name", confidence=90, success_rate=100.0)
        assert cache.score(entry) == 90

    def test_capped_below_exact(self, cache):
        entry = MappingCacheEntry(pattern="p", target_field="name", confidence=100, success_rate=100.0)
        assert cache.score(entry) == 95

    def test_old_entries_decay_to_floor(self, cache):
        old = datetime.now(timezone.utc) - timedelta(days=3650)
        entry = MappingCacheEntry(
            pattern="p", target_field="name", confidence=90, success_rate=100.0, last_used_at=old
        )
        assert cache.score(entry) == 45

    async def test_best_match_respects_allowed_targets(self, cache):
        await cache.record_outcome([mapping(target="name")], success=True)
        assert await cache.best_match("prod_name", allowed_targets={"sku"}) is None
        match = await cache.best_match("prod_name", allowed_targets={"name"})
        assert match is not None
        assert match[0].target_field == "name"
