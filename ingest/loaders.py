"""
Knowledge-base file discovery and loading for the index builder.
Only plain-text formats are indexed (docs, logs, scripts, config files).
"""
from pathlib import Path
from typing import Iterator

ALLOWED_EXTENSIONS = frozenset({
    ".md", ".txt", ".log", ".sh",
    ".conf", ".cfg", ".ini", ".yaml", ".yml",
})


def normalize_newlines(text: str) -> str:
    return str(text or "").replace("\r\n", "\n")


def load_text(path: Path) -> str:
    """Load a text file as UTF-8 with LF line endings."""
    return normalize_newlines(path.read_text(encoding="utf-8", errors="replace"))


def iter_kb_files(kb_dir: Path) -> Iterator[Path]:
    """
    Yield indexable files under kb_dir, recursively, in a stable order.

    Args:
        kb_dir: Knowledge-base root directory.
    """
    for path in sorted(Path(kb_dir).rglob("*")):
        if path.is_file() and path.suffix.lower() in ALLOWED_EXTENSIONS:
            yield path
