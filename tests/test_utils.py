"""Tests for KB Retrieval utilities."""

import os

from kb_retrieval.utils import (
    activate_version,
    canonical_json,
    estimate_tokens,
    iter_batches,
    normalize_prose,
    normalize_text,
    sha256_text,
)


def test_normalize_text():
    """Test text normalization."""
    assert normalize_text("  hello   world  ") == "hello world"
    assert normalize_text("hello\u00a0world") == "hello world"
    assert normalize_text("line1\nline2") == "line1 line2"


def test_normalize_prose_keeps_paragraphs():
    """Test MDX is stripped while paragraph breaks survive."""
    content = "export const meta = {}\n\n<Hero title=\"x\" />\n\nFirst   line.\n\n\n\n<Note>\nhidden\n</Note>\nSecond."
    assert normalize_prose(content) == "First line.\n\nSecond."


def test_estimate_tokens():
    """Test the chars / 4 estimate rounds up."""
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_sha256_text():
    """Test SHA-256 hash generation."""
    digest = sha256_text("hello world")
    assert digest == sha256_text("hello world")
    assert len(digest) == 64
    assert digest != sha256_text("different text")


def test_canonical_json_ignores_key_order():
    """Test hash input does not depend on key order."""
    assert canonical_json({"b": 1, "a": [1, 2]}) == canonical_json({"a": [1, 2], "b": 1})
    assert canonical_json({"a": "é"}) == '{"a":"é"}'


def test_iter_batches():
    """Test batching keeps order and a short tail."""
    assert list(iter_batches([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
    assert list(iter_batches([], 3)) == []


def test_activate_version_switches_link(tmp_path):
    """Test the current link moves to the newest version."""
    first = tmp_path / "versions" / "1"
    second = tmp_path / "versions" / "2"
    for version in (first, second):
        version.mkdir(parents=True)
        (version / "name.txt").write_text(version.name)

    activate_version(str(tmp_path), str(first))
    assert (tmp_path / "current" / "name.txt").read_text() == "1"

    activate_version(str(tmp_path), str(second))
    assert (tmp_path / "current" / "name.txt").read_text() == "2"
    assert not os.path.exists(tmp_path / "current_tmp")
