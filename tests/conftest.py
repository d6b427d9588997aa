import os
import sys

# Force CPU-only mode for tests (avoids CUDA compatibility issues)
os.environ["CUDA_VISIBLE_DEVICES"] = ""

# Add src directory to Python path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "src"))

import hashlib  # noqa: E402

import numpy as np  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from engram_memory.config import Settings  # noqa: E402
from engram_memory.errors import EmbeddingError  # noqa: E402
from engram_memory.storage.sqlite_storage import SqliteMemoryStorage  # noqa: E402
from engram_memory.utils.embeddings import EmbeddingProvider  # noqa: E402

FAKE_DIMENSION = 16

# Fixed clock for deterministic scoring: 2026-01-01T00:00:00Z
FIXED_NOW = 1767225600.0


class FakeEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic embedder for tests.

    Texts registered with :meth:`set` map to preset vectors; anything else
    gets a pseudo-random unit vector seeded from the text hash, so distinct
    unregistered texts are nearly orthogonal. ``fail = True`` makes every
    call raise ``EmbeddingError``.
    """

    def __init__(self, dimension: int = FAKE_DIMENSION):
        self.dimension = dimension
        self.vectors: dict[str, list[float]] = {}
        self.fail = False
        self.calls: list[str] = []

    def set(self, text: str, vector: list[float]) -> None:
        self.vectors[text] = list(vector)

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingError("embedding backend unavailable")
        if text in self.vectors:
            return list(self.vectors[text])
        seed = int.from_bytes(hashlib.sha256(text.encode()).digest()[:4], "little")
        vector = np.random.default_rng(seed).normal(size=self.dimension)
        return (vector / np.linalg.norm(vector)).tolist()


def unit_vector(index: int, dimension: int = FAKE_DIMENSION) -> list[float]:
    """One-hot vector: distinct indices are orthogonal (similarity 0)."""
    vector = [0.0] * dimension
    vector[index] = 1.0
    return vector


def blend(index_a: int, index_b: int, weight_b: float, dimension: int = FAKE_DIMENSION) -> list[float]:
    """Unit vector mixing two axes; similarity to ``unit_vector(index_a)`` is ``cos(atan(w))``."""
    vector = [0.0] * dimension
    vector[index_a] = 1.0
    vector[index_b] = weight_b
    norm = float(np.linalg.norm(vector))
    return [v / norm for v in vector]


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def embedder():
    return FakeEmbeddingProvider()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(storage={"database_path": tmp_path / "memory.db"})


@pytest_asyncio.fixture
async def storage(tmp_path):
    """SQLite store on a throwaway database file."""
    store = SqliteMemoryStorage(tmp_path / "memory.db")
    await store.initialize()
    yield store
    await store.close()
