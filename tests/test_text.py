"""Tests for text helpers."""

import re

import pytest

from arbiter.utils.text import (
    chunk_message,
    format_duration,
    random_base36,
    slugify,
    strip_nul,
    to_base36,
    truncate,
)


class TestSlugify:
    def test_basic(self):
        assert slugify("Fix the bug in Auth!") == "fix-the-bug-in-auth"

    def test_max_length_never_ends_with_hyphen(self):
        slug = slugify("a" * 29 + " bcd")
        assert len(slug) <= 30
        assert not slug.endswith("-")
        assert re.fullmatch(r"[a-z0-9-]+", slug)

    def test_empty_falls_back(self):
        assert slugify("!!!") == "task"
        assert slugify("") == "task"


class TestBase36:
    def test_values(self):
        assert to_base36(0) == "0"
        assert to_base36(35) == "z"
        assert to_base36(36) == "10"

    def test_negative(self):
        with pytest.raises(ValueError):
            to_base36(-1)

    def test_random(self):
        assert re.fullmatch(r"[0-9a-z]{6}", random_base36())


class TestFormatting:
    def test_truncate(self):
        assert truncate("short", 10) == "short"
        assert truncate("abcdef", 3) == "abc..."

    def test_duration(self):
        assert format_duration(45) == "45s"
        assert format_duration(192) == "3m 12s"
        assert format_duration(3840) == "1h 4m"

    def test_strip_nul(self):
        assert strip_nul("a\x00b") == "ab"


class TestChunkMessage:
    def test_short_content_single_chunk(self):
        assert chunk_message("hello", 10) == ["hello"]

    def test_prefers_newline(self):
        text = "a" * 12 + "\n" + "b" * 10
        assert chunk_message(text, 20) == ["a" * 12, "b" * 10]

    def test_falls_back_to_space(self):
        text = "a" * 15 + " " + "b" * 10
        assert chunk_message(text, 20) == ["a" * 15, "b" * 10]

    def test_hard_split(self):
        chunks = chunk_message("x" * 45, 20)
        assert chunks == ["x" * 20, "x" * 20, "x" * 5]

    def test_early_break_ignored(self):
        text = "ab " + "c" * 30
        chunks = chunk_message(text, 20)
        assert chunks[0] == text[:20]
        assert all(len(c) <= 20 for c in chunks)
