import numpy as np
import pytest

from context_allocator.config import EmbeddingConfig
from context_allocator.embeddings import EmbeddingService, cosine_scores
from context_allocator.ephemeral_index import InMemoryEphemeralIndex
from context_allocator.exceptions import BackendUnavailableError
from context_allocator.models import Chunk
from context_allocator.tokenizer import WhitespaceTokenizer
from context_allocator.vector_store import ChromaSearchBackend, build_where

VOCAB = ["tesla", "car", "battery", "cake", "recipe", "sugar"]


class BagOfWordsModel:
    """Stands in for a SentenceTransformer: counts vocabulary words."""

    def __init__(self):
        self.batches = []

    def encode(self, texts, show_progress_bar=False, convert_to_numpy=True):
        self.batches.append(list(texts))
        rows = []
        for text in texts:
            tokens = text.lower().split()
            rows.append([tokens.count(word) + 0.01 for word in VOCAB])
        return np.array(rows, dtype=float)


@pytest.fixture
def embedding_service():
    service = EmbeddingService(EmbeddingConfig(model_name="bag-of-words"))
    service._model = BagOfWordsModel()
    return service


def test_embed_batch_normalizes(embedding_service):
    result = embedding_service.embed_batch(["tesla car", "cake   recipe\n sugar"])

    assert result.vectors.shape == (2, len(VOCAB))
    assert np.allclose(np.linalg.norm(result.vectors, axis=1), 1.0)
    assert result.model_name == "bag-of-words"
    # Whitespace is collapsed before encoding
    assert embedding_service.model.batches[0][1] == "cake recipe sugar"


def test_cosine_scores():
    scores = cosine_scores(np.array([1.0, 0.0]), np.array([[2.0, 0.0], [0.0, 3.0], [1.0, 1.0]]))

    assert scores[0] == pytest.approx(1.0)
    assert scores[1] == pytest.approx(0.0)
    assert scores[2] == pytest.approx(2 ** -0.5)
    assert len(cosine_scores(np.array([1.0]), np.empty((0, 1)))) == 0


@pytest.mark.asyncio
async def test_ephemeral_index_ranks_chunks(embedding_service):
    index = InMemoryEphemeralIndex(embedding_service, tokenizer=WhitespaceTokenizer(), chunk_tokens=4)
    content = "cake recipe with sugar\n\ntesla car battery range\n\nmore cake sugar recipe"

    chunks = await index.index_and_search("tesla battery", content, k=2)

    assert len(chunks) == 2
    assert chunks[0].text.startswith("tesla car battery")
    assert content[chunks[0].start:chunks[0].end] == chunks[0].text
    assert chunks[0].score >= chunks[1].score


@pytest.mark.asyncio
async def test_ephemeral_index_whole_documents(embedding_service):
    index = InMemoryEphemeralIndex(embedding_service, tokenizer=WhitespaceTokenizer())
    docs = [
        Chunk(text="cake recipe", index=0),
        Chunk(text="tesla car", index=1),
    ]

    chunks = await index.index_and_search("tesla", docs, k=2, need_chunk=False)

    assert [c.index for c in chunks] == [1, 0]


@pytest.mark.asyncio
async def test_ephemeral_index_filter_and_empty_query(embedding_service):
    index = InMemoryEphemeralIndex(embedding_service, tokenizer=WhitespaceTokenizer())
    docs = [Chunk(text="tesla car", index=0), Chunk(text="tesla battery", index=1)]

    assert await index.index_and_search("", docs, need_chunk=False) == []
    chunks = await index.index_and_search("tesla", docs, need_chunk=False, filter=lambda c: c.index == 1)
    assert [c.index for c in chunks] == [1]


@pytest.mark.asyncio
async def test_ephemeral_index_wraps_model_errors():
    class BrokenModel:
        def encode(self, *args, **kwargs):
            raise RuntimeError("out of memory")

    service = EmbeddingService(EmbeddingConfig(model_name="broken"))
    service._model = BrokenModel()
    index = InMemoryEphemeralIndex(service, tokenizer=WhitespaceTokenizer())

    with pytest.raises(BackendUnavailableError):
        await index.index_and_search("q", "some text here")


def test_build_where():
    entities = [{"entity_id": "d1"}, {"entity_id": "d2"}, {"entity_type": "document"}]

    assert build_where([], []) is None
    assert build_where([], ["document"]) == {"domain": {"$in": ["document"]}}
    assert build_where(entities, ["document"]) == {
        "$and": [
            {"entity_id": {"$in": ["d1", "d2"]}},
            {"domain": {"$in": ["document"]}},
        ]
    }


class FakeCollection:
    def __init__(self, results=None, fail=False):
        self.results = results
        self.fail = fail
        self.queries = []

    def query(self, query_embeddings, n_results, where, include):
        self.queries.append({"n_results": n_results, "where": where})
        if self.fail:
            raise RuntimeError("connection refused")
        return self.results


@pytest.mark.asyncio
async def test_chroma_backend_maps_results(embedding_service):
    backend = ChromaSearchBackend(path="unused", embedding_service=embedding_service)
    backend._collection = FakeCollection(
        {
            "ids": [["d1-0", "d1-3"]],
            "documents": [["first chunk", "second chunk"]],
            "metadatas": [[{"domain": "document", "title": "Doc", "entity_id": "d1"}, None]],
            "distances": [[0.2, 1.0]],
        }
    )

    hits = await backend.search("tesla", entities=[{"entity_id": "d1"}], domains=["document"], limit=2)

    assert [h.id for h in hits] == ["d1-0", "d1-3"]
    assert hits[0].score == pytest.approx(0.9)
    assert hits[0].title == "Doc"
    assert hits[0].snippets == ["first chunk"]
    assert hits[1].domain == ""
    assert backend._collection.queries[0]["n_results"] == 2


@pytest.mark.asyncio
async def test_chroma_backend_empty_and_failure(embedding_service):
    backend = ChromaSearchBackend(path="unused", embedding_service=embedding_service)
    backend._collection = FakeCollection({"ids": [[]], "documents": [[]], "metadatas": [[]], "distances": [[]]})
    assert await backend.search("q", entities=[], domains=[]) == []

    backend._collection = FakeCollection(fail=True)
    with pytest.raises(BackendUnavailableError):
        await backend.search("q", entities=[], domains=[])
