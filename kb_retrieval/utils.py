"""Utility functions shared by the build and load paths."""

from __future__ import annotations

import hashlib
import json
import math
import os
import re
import shutil
from typing import Any, Iterable, List


def sha256_text(text: str) -> str:
    """Calculate SHA-256 hash of a text string."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def canonical_json(value: Any) -> str:
    """Deterministic JSON used as hash input."""
    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def estimate_tokens(text: str) -> int:
    """Cheap token estimate: characters / 4, rounded up."""
    return math.ceil(len(text) / 4)


def normalize_text(text: str) -> str:
    """Normalize whitespace in text."""
    return " ".join(text.replace("\u00a0", " ").split())


_IMPORT_EXPORT_RE = re.compile(r"^(?:import|export)\s+.*$", re.MULTILINE)
_JSX_SELF_CLOSING_RE = re.compile(r"<([A-Z][A-Za-z0-9]*)[^>]*/>")
_JSX_PAIRED_RE = re.compile(r"<([A-Z][A-Za-z0-9]*)[^>]*>[\s\S]*?</\1>")
_JSX_EXPR_RE = re.compile(r"\{[^}]+\}")


def normalize_prose(content: str) -> str:
    """Strip MDX components and normalize whitespace, keeping paragraph breaks."""
    cleaned = _IMPORT_EXPORT_RE.sub("", content)
    cleaned = _JSX_SELF_CLOSING_RE.sub("", cleaned)
    cleaned = _JSX_PAIRED_RE.sub("", cleaned)
    cleaned = _JSX_EXPR_RE.sub("", cleaned)

    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    cleaned = re.sub(r" {2,}", " ", cleaned)
    cleaned = "\n".join(line.strip() for line in cleaned.split("\n"))
    return re.sub(r"\n{3,}", "\n\n", cleaned).strip()


def iter_batches(items: List, batch_size: int) -> Iterable[List]:
    """Yield batches of items."""
    for start in range(0, len(items), batch_size):
        yield items[start : start + batch_size]


def activate_version(root_dir: str, version_dir: str, link_name: str = "current") -> None:
    """
    Atomically switch the ``link_name`` symlink under ``root_dir`` to ``version_dir``.

    Falls back to copying on systems that don't support atomic symlink replacement.
    """
    current_path = os.path.join(root_dir, link_name)
    tmp_link = os.path.join(root_dir, f"{link_name}_tmp")
    relative_target = os.path.relpath(version_dir, root_dir)

    if os.path.islink(tmp_link) or os.path.exists(tmp_link):
        if os.path.isdir(tmp_link) and not os.path.islink(tmp_link):
            shutil.rmtree(tmp_link)
        else:
            os.unlink(tmp_link)

    try:
        os.symlink(relative_target, tmp_link)
        os.replace(tmp_link, current_path)
    except OSError:
        if os.path.islink(tmp_link):
            os.unlink(tmp_link)
        if os.path.islink(current_path):
            os.unlink(current_path)
        elif os.path.exists(current_path):
            shutil.rmtree(current_path)
        shutil.copytree(version_dir, current_path)
