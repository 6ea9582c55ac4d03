import asyncio
import os
import sys
from pathlib import Path

# Ensure src is in pythonpath
sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from dotenv import load_dotenv
load_dotenv()

from code_context_index.config import settings
from code_context_index.chunking.text_chunker import TextChunker
from code_context_index.embeddings.runner import EmbeddingRunner
from code_context_index.indexing.pipeline import IndexingPipeline
from code_context_index.indexing.service import IndexingService
from code_context_index.models import FileToProcess
from code_context_index.storage.vector_store import VectorStore
from code_context_index.utils import LANGUAGE_BY_EXTENSION

SKIP_DIRS = {".git", ".code-index", "node_modules", "__pycache__", ".venv", "dist", "build"}
MAX_FILE_BYTES = 1_000_000


def collect_files(root: Path):
    files = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in SKIP_DIRS]
        for name in filenames:
            path = Path(dirpath) / name
            if path.suffix.lower() not in LANGUAGE_BY_EXTENSION:
                continue
            if path.stat().st_size > MAX_FILE_BYTES:
                continue
            try:
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                print(f"Skipping {path}: {e}")
                continue
            files.append(FileToProcess(id=str(path), path=str(path), content=content))
    return files


async def main(root: str):
    print("Initializing components...")
    store = VectorStore()
    runner = EmbeddingRunner()
    pipeline = IndexingPipeline(TextChunker(), runner)
    await pipeline.initialize()
    service = IndexingService(store, pipeline)

    try:
        if service.ensure_embedding_model(settings.embedding_model):
            print("Embedding model changed; index cleared.")
        store.restore_dimension()

        print(f"Scanning {root}...")
        files = collect_files(Path(root))
        print(f"Found {len(files)} source files.")

        def progress(done, total, path):
            print(f"({done}/{total}) {path}")

        report = await service.index_files(files, progress=progress)

        print(
            f"Indexed {len(report.indexed)}, skipped {len(report.skipped)}, "
            f"failed {len(report.failed)}, cancelled {len(report.cancelled)}."
        )
        for path, error in report.failed.items():
            print(f"  FAILED {path}: {error}")
    finally:
        await pipeline.dispose()
        store.dispose()
    print("Done! Index updated.")


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "."))
