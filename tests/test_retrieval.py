import pytest

from context_allocator.circuit_breaker import CircuitBreaker
from context_allocator.models import ContentItem, DocumentItem, ResourceItem
from context_allocator.retrieval import (
    ChunkRetriever,
    EphemeralSearchStrategy,
    IndexedSearchStrategy,
    TruncationStrategy,
    build_default_retriever,
)
from context_allocator.schemas import SearchHit

from conftest import FakeEphemeralIndex, FakeSearchBackend, words


def make_retriever(backend, index, tokenizer, truncate_to=20):
    return ChunkRetriever(
        [
            IndexedSearchStrategy(backend, breaker=CircuitBreaker(name="test", failure_threshold=100)),
            EphemeralSearchStrategy(index),
            TruncationStrategy(tokenizer, max_tokens=truncate_to),
        ],
        concurrency=2,
        default_limit=3,
    )


@pytest.mark.asyncio
async def test_indexed_search_wins_for_indexed_items(tokenizer):
    hits = {
        "r1": [
            SearchHit(id="r1", domain="resource", snippets=["battery roadmap"], score=0.9,
                      metadata={"start": 100, "end": 115}),
        ]
    }
    backend = FakeSearchBackend(hits)
    index = FakeEphemeralIndex(tokenizer)
    retriever = make_retriever(backend, index, tokenizer)

    chunks = await retriever.retrieve("battery", ResourceItem("r1", content=words(50)))

    assert [c.text for c in chunks] == ["battery roadmap"]
    assert chunks[0].start == 100
    assert backend.calls[0]["entities"] == [{"entity_id": "r1", "entity_type": "resource"}]
    assert backend.calls[0]["domains"] == ["resource"]
    assert index.calls == []


@pytest.mark.asyncio
async def test_falls_back_to_ephemeral_when_backend_fails(tokenizer):
    backend = FakeSearchBackend(fail=True)
    index = FakeEphemeralIndex(tokenizer, chunk_tokens=10)
    retriever = make_retriever(backend, index, tokenizer)

    item = DocumentItem("d1", content=words(30) + " battery")
    chunks = await retriever.retrieve("battery", item)

    assert len(backend.calls) == 1
    assert len(index.calls) == 1
    assert "battery" in chunks[0].text
    assert len(chunks) == 3


@pytest.mark.asyncio
async def test_falls_back_to_ephemeral_when_backend_empty(tokenizer):
    backend = FakeSearchBackend()
    index = FakeEphemeralIndex(tokenizer)
    retriever = make_retriever(backend, index, tokenizer)

    chunks = await retriever.retrieve("w1", DocumentItem("d1", content=words(30)))

    assert len(backend.calls) == 1
    assert chunks


@pytest.mark.asyncio
async def test_truncation_is_last_resort(tokenizer):
    backend = FakeSearchBackend(fail=True)
    index = FakeEphemeralIndex(tokenizer, fail=True)
    retriever = make_retriever(backend, index, tokenizer, truncate_to=20)

    chunks = await retriever.retrieve("anything", ResourceItem("r1", content=words(50)))

    assert len(chunks) == 1
    assert chunks[0].text == words(20)
    assert chunks[0].start == 0


@pytest.mark.asyncio
async def test_truncation_splits_the_head_into_chunks(tokenizer):
    strategy = TruncationStrategy(tokenizer, max_tokens=20, chunk_tokens=5)

    chunks = await strategy.run("anything", ResourceItem("r1", content=words(50)), limit=3)

    assert [c.text for c in chunks] == [words(5), words(5, start=5), words(5, start=10)]
    assert [c.index for c in chunks] == [0, 1, 2]
    assert chunks[1].start == chunks[0].end + 1


@pytest.mark.asyncio
async def test_content_snippets_skip_indexed_search(tokenizer):
    backend = FakeSearchBackend()
    index = FakeEphemeralIndex(tokenizer)
    retriever = make_retriever(backend, index, tokenizer)

    await retriever.retrieve("w1", ContentItem(content=words(30), entity_id="c1"))

    assert backend.calls == []
    assert len(index.calls) == 1


@pytest.mark.asyncio
async def test_open_circuit_falls_through(tokenizer):
    backend = FakeSearchBackend(fail=True)
    index = FakeEphemeralIndex(tokenizer)
    breaker = CircuitBreaker(name="flaky", failure_threshold=1, reset_timeout=3600)
    retriever = ChunkRetriever(
        [IndexedSearchStrategy(backend, breaker=breaker), EphemeralSearchStrategy(index)]
    )

    await retriever.retrieve("w1", DocumentItem("d1", content=words(30)))
    await retriever.retrieve("w1", DocumentItem("d2", content=words(30)))

    # Second call never reaches the backend
    assert len(backend.calls) == 1
    assert len(index.calls) == 2


@pytest.mark.asyncio
async def test_retrieve_many_keeps_input_order(tokenizer):
    index = FakeEphemeralIndex(tokenizer, chunk_tokens=5)
    retriever = ChunkRetriever([EphemeralSearchStrategy(index)], concurrency=2)

    items = [DocumentItem(f"d{i}", content=words(5, prefix=f"d{i}x")) for i in range(4)]
    results = await retriever.retrieve_many("query", items)

    assert [r[0].text for r in results] == [item.content for item in items]


@pytest.mark.asyncio
async def test_default_retriever_without_backends_truncates(tokenizer):
    retriever = build_default_retriever(None, None, tokenizer)

    chunks = await retriever.retrieve("q", DocumentItem("d1", content=words(12000)))

    assert len(chunks) == 1
    assert tokenizer.count(chunks[0].text) == 10000
