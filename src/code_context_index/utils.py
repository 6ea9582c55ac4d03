"""
Small helpers shared by the store, the chunker and the retrieval layer.
"""

from __future__ import annotations

import hashlib
from pathlib import PurePath
from typing import Dict, Optional

# Rough characters-per-token ratio used when no tokenizer is available
CHARS_PER_TOKEN = 4

LANGUAGE_BY_EXTENSION: Dict[str, str] = {
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".py": "python",
    ".pyw": "python",
    ".java": "java",
    ".c": "c",
    ".cpp": "cpp",
    ".h": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".go": "go",
    ".rb": "ruby",
    ".php": "php",
    ".html": "html",
    ".css": "css",
    ".json": "json",
    ".md": "markdown",
    ".sql": "sql",
    ".sh": "shell",
    ".bat": "batch",
    ".ps1": "powershell",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".rs": "rust",
}


def language_for_path(path: str) -> Optional[str]:
    """Map a file path to a language name by extension, or "unknown"."""
    return LANGUAGE_BY_EXTENSION.get(PurePath(path).suffix.lower(), "unknown")


def content_hash(content: str) -> str:
    """SHA-256 of file content, used to detect changed files."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return max(1, len(text) // CHARS_PER_TOKEN)


def quick_hash(content: str) -> int:
    """
    Fast 32-bit string hash for near-duplicate suppression.

    Not collision resistant; never use it for anything but deduplication.
    """
    h = 0
    for char in content:
        h = ((h << 5) - h + ord(char)) & 0xFFFFFFFF
    # Signed 32-bit, matching the classic string hash
    return h - 0x100000000 if h & 0x80000000 else h
