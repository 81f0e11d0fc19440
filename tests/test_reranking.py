import pytest

from context_allocator.reranking import CrossEncoderReranker
from context_allocator.schemas import Source


class KeywordModel:
    """Stands in for a CrossEncoder: high logit when the query word occurs."""

    def predict(self, pairs):
        return [4.0 if query in text else -4.0 for query, text in pairs]


@pytest.fixture
def reranker():
    reranker = CrossEncoderReranker(model_name="test-model")
    reranker._model = KeywordModel()
    return reranker


def sources():
    return [
        Source(url="https://a", page_content="nothing here", score=0.9),
        Source(url="https://b", page_content="all about tesla", score=0.1),
        Source(url="https://c", page_content="tesla again", score=0.2),
    ]


@pytest.mark.asyncio
async def test_rerank_orders_and_thresholds(reranker):
    ranked = await reranker.rerank("tesla", sources(), threshold=0.5)

    assert [s.url for s in ranked] == ["https://b", "https://c"]
    assert ranked[0].score > 0.9
    assert ranked[0].metadata["original_score"] == 0.1


@pytest.mark.asyncio
async def test_rerank_top_k(reranker):
    ranked = await reranker.rerank("tesla", sources(), top_k=1)

    assert [s.url for s in ranked] == ["https://b"]


@pytest.mark.asyncio
async def test_rerank_empty(reranker):
    assert await reranker.rerank("tesla", []) == []
