"""Canonical hashing helpers for content addressing and the ledger chain."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

# Directories that never contribute to a source tree's identity.
IGNORED_DIRS: frozenset[str] = frozenset({".git", ".hg", ".svn", "__pycache__"})

_CHUNK_SIZE = 1 << 16


def canonical_json_bytes(obj: Any) -> bytes:
    """Sorted-key, compact, ASCII-only JSON, so equal objects hash equally."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_address(obj: Any) -> str:
    """Content-address a JSON-serializable object.

    Returns "sha256:<hex>".
    """
    return f"sha256:{sha256_hex(canonical_json_bytes(obj))}"


def tree_digest(root: Path) -> str:
    """SHA-256 over the relative paths and bytes of every file under *root*.

    Files are visited in sorted relative-path order so the digest depends
    only on content, never on filesystem enumeration order or mtimes.
    Version-control metadata directories are skipped.
    """
    root = Path(root)
    if not root.is_dir():
        raise FileNotFoundError(f"Source tree not found: {root}")

    files = sorted(
        p for p in root.rglob("*")
        if p.is_file() and not IGNORED_DIRS.intersection(p.relative_to(root).parts)
    )

    digest = hashlib.sha256()
    for path in files:
        rel = path.relative_to(root).as_posix().encode("utf-8")
        digest.update(len(rel).to_bytes(4, "big"))
        digest.update(rel)
        file_hash = hashlib.sha256()
        with path.open("rb") as fh:
            for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
                file_hash.update(chunk)
        digest.update(file_hash.digest())
    return digest.hexdigest()


def artifact_key(source_digest: str, config_hash: str) -> str:
    """Content address of a build: (source tree digest, build-config hash)."""
    return content_address({"source": source_digest, "config": config_hash})


def compute_entry_hash(entry_dict: dict[str, Any]) -> str:
    """SHA-256 of a ledger entry (excluding the entry_hash field itself).

    This is the seal that makes each entry tamper-evident.
    """
    d = {k: v for k, v in entry_dict.items() if k != "entry_hash"}
    return sha256_hex(canonical_json_bytes(d))
