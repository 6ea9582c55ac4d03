import hashlib
from typing import List

import pytest

from code_context_index.storage.vector_store import VectorStore


def fake_vector(text: str, dimension: int = 8) -> List[float]:
    """Deterministic, strictly positive embedding derived from the text."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [b / 255.0 + 0.01 for b in digest[:dimension]]


@pytest.fixture
def store(tmp_path):
    vs = VectorStore(
        database_path=str(tmp_path / "index" / "embeddings.db"),
        max_elements=64,
        capacity_ceiling=1024,
    )
    yield vs
    vs.dispose()


def add_file_with_chunks(store: VectorStore, path: str, chunks: List[str], metadata=None):
    """Store a file whose chunks are laid out back to back; returns (file, chunk records)."""
    content = "".join(chunks)
    offsets = []
    position = 0
    for chunk in chunks:
        offsets.append(position)
        position += len(chunk)
    record = store.store_file(path, content, last_modified=0.0)
    return record, store.store_chunks(record.id, chunks, offsets, metadata)
