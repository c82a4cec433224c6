from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
from qdrant_client import AsyncQdrantClient
from qdrant_client.models import Distance, PointStruct, VectorParams

from expertrag.errors import CollectionNotFoundError, VectorSearchError
from expertrag.retrieval.service import QdrantSearchClient, SearchConfig

COLLECTION = "experts-collection"


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FlakyQdrant:
    """Stand-in for AsyncQdrantClient whose query fails a fixed number of times."""

    def __init__(self, failures: list[Exception]) -> None:
        self._failures = list(failures)
        self.calls = 0

    async def query_points(self, **kwargs):
        self.calls += 1
        if self._failures:
            raise self._failures.pop(0)
        point = SimpleNamespace(id=7, score=0.8, payload={"text": "Hire for strength"})
        return SimpleNamespace(points=[point])

    async def close(self) -> None:
        return None


async def _seeded_client() -> AsyncQdrantClient:
    client = AsyncQdrantClient(location=":memory:")
    await client.create_collection(
        collection_name=COLLECTION,
        vectors_config=VectorParams(size=4, distance=Distance.COSINE),
    )
    await client.upsert(
        collection_name=COLLECTION,
        points=[
            PointStruct(id=1, vector=[1.0, 0.0, 0.0, 0.0], payload={"text": "exact", "source": "chapter 1"}),
            PointStruct(id=2, vector=[0.0, 1.0, 0.0, 0.0], payload={"text": "orthogonal"}),
            PointStruct(id=3, vector=[0.7, 0.7, 0.0, 0.0], payload={"content": "partial", "page": 12}),
        ],
    )
    return client


def test_search_returns_matches_above_threshold_in_score_order():
    async def scenario():
        searcher = QdrantSearchClient(await _seeded_client(), SearchConfig(collection_name=COLLECTION))
        try:
            return await searcher.search([1.0, 0.0, 0.0, 0.0], COLLECTION)
        finally:
            await searcher.aclose()

    result = asyncio.run(scenario())

    assert [match.id for match in result.results] == [1, 3]
    assert result.results[0].score == pytest.approx(1.0, abs=1e-4)
    assert result.results[0].payload["source"] == "chapter 1"
    assert result.processing_time_ms >= 0


def test_health_check_reports_existing_collection():
    async def scenario():
        searcher = QdrantSearchClient(await _seeded_client(), SearchConfig(collection_name=COLLECTION))
        try:
            healthy = await searcher.check_collection_health()
            info = await searcher.get_collection_info()
        finally:
            await searcher.aclose()
        return healthy, info

    healthy, info = asyncio.run(scenario())

    assert healthy is True
    assert info.name == COLLECTION
    assert info.status == "green"
    assert info.points_count == 3


def test_health_check_raises_for_missing_collection():
    async def scenario():
        searcher = QdrantSearchClient(await _seeded_client())
        try:
            await searcher.check_collection_health("unknown")
        finally:
            await searcher.aclose()

    with pytest.raises(CollectionNotFoundError, match="Collection 'unknown' not found"):
        asyncio.run(scenario())


def test_search_with_retry_recovers_from_transient_failure():
    fake = FlakyQdrant([ConnectionError("connection reset by peer"), TimeoutError("timed out")])
    sleep = RecordingSleep()
    searcher = QdrantSearchClient(fake, SearchConfig(collection_name=COLLECTION), sleep=sleep)

    result = asyncio.run(searcher.search_with_retry([0.1, 0.2], COLLECTION))

    assert fake.calls == 3
    assert sleep.delays == [1.0, 2.0]
    assert result.results[0].payload["text"] == "Hire for strength"


def test_search_with_retry_stops_on_permanent_failure():
    fake = FlakyQdrant([ValueError("wrong vector size")])
    sleep = RecordingSleep()
    searcher = QdrantSearchClient(fake, sleep=sleep)

    with pytest.raises(VectorSearchError) as excinfo:
        asyncio.run(searcher.search_with_retry([0.1], COLLECTION))

    assert fake.calls == 1
    assert sleep.delays == []
    assert excinfo.value.code == "SEARCH_RETRY_FAILED"
    assert "after 1 attempts" in str(excinfo.value)


def test_search_with_retry_caps_backoff_delay():
    fake = FlakyQdrant([TimeoutError("timeout")] * 5)
    sleep = RecordingSleep()
    config = SearchConfig(max_retries=5, retry_base_seconds=2.0, max_retry_delay_seconds=5.0)
    searcher = QdrantSearchClient(fake, config, sleep=sleep)

    with pytest.raises(VectorSearchError, match="after 5 attempts"):
        asyncio.run(searcher.search_with_retry([0.1], COLLECTION))

    assert sleep.delays == [2.0, 4.0, 5.0, 5.0]


class StatusQdrant:
    """Stand-in for AsyncQdrantClient reporting a fixed collection status."""

    def __init__(self, status: str) -> None:
        self._status = status

    async def get_collections(self):
        return SimpleNamespace(collections=[SimpleNamespace(name=COLLECTION)])

    async def get_collection(self, name):
        return SimpleNamespace(status=self._status, points_count=0, indexed_vectors_count=0, payload_schema={})

    async def close(self) -> None:
        return None


@pytest.mark.parametrize(("status", "expected"), [("green", True), ("yellow", True), ("red", False), ("grey", False)])
def test_health_depends_on_collection_status(status, expected):
    searcher = QdrantSearchClient(StatusQdrant(status), SearchConfig(collection_name=COLLECTION))

    assert asyncio.run(searcher.check_collection_health()) is expected
