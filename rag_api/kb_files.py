"""
Read-only access to knowledge-base files, shared by /kb/file and the agent.
"""
from pathlib import Path

from fastapi import HTTPException


def resolve_kb_file(source: str, kb_dir: str) -> Path:
    """
    Map a requested source to a file directly inside kb_dir.

    Only the basename is honoured, so "../../etc/passwd" resolves to
    kb_dir/passwd. Raises HTTPException on invalid or missing files.
    """
    name = Path(str(source or "").strip().replace("\\", "/")).name
    if not name or name in (".", ".."):
        raise HTTPException(status_code=400, detail="Invalid source.")

    root = Path(kb_dir).resolve()
    full = (root / name).resolve()
    try:
        full.relative_to(root)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid path.")

    if not full.is_file():
        raise HTTPException(status_code=404, detail="File not found.")
    return full
