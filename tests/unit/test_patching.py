"""Unit tests for in-memory unified diff application."""

import pytest

from governor.application.patching import (
    apply_patch,
    clean_patch,
    parse_diff_target,
    parse_hunks,
)
from governor.errors import PatchApplyError


BEFORE = "line 1\nline 2\nline 3\nline 4\nline 5\n"


class TestParseDiffTarget:
    """Test ---/+++ header parsing."""

    def test_modify_strips_prefixes(self):
        target = parse_diff_target("--- a/src/x.py\n+++ b/src/x.py\n")
        assert target.old_path == "src/x.py"
        assert target.new_path == "src/x.py"
        assert target.change_type == "modify"

    def test_create_from_dev_null(self):
        target = parse_diff_target("--- /dev/null\n+++ b/new.md\n")
        assert target.old_path is None
        assert target.change_type == "create"

    def test_delete_to_dev_null(self):
        target = parse_diff_target("--- a/old.md\n+++ /dev/null\n")
        assert target.new_path is None
        assert target.change_type == "delete"

    def test_timestamp_after_tab_is_ignored(self):
        target = parse_diff_target("--- a/f.txt\t2024-01-01\n+++ b/f.txt\t2024-01-02\n")
        assert target.new_path == "f.txt"


class TestParseHunks:
    """Test hunk parsing."""

    def test_counts_default_to_one(self):
        hunks = parse_hunks("@@ -2 +2 @@\n-line 2\n+line two\n")
        assert len(hunks) == 1
        assert hunks[0].old_count == 1
        assert hunks[0].new_count == 1

    def test_truncated_hunk_raises(self):
        with pytest.raises(PatchApplyError, match="truncated"):
            parse_hunks("@@ -1,3 +1,3 @@\n line 1\n")

    def test_malformed_line_raises(self):
        with pytest.raises(PatchApplyError, match="malformed"):
            parse_hunks("@@ -1,2 +1,2 @@\n line 1\n?oops\n")

    def test_clean_patch_strips_code_fence(self):
        cleaned = clean_patch("```diff\n--- a/x\n+++ b/x\n```")
        assert cleaned.startswith("--- a/x")
        assert "```" not in cleaned


class TestApplyPatch:
    """Test applying hunks to a pre-image."""

    def test_simple_replacement(self):
        patch = "--- a/f\n+++ b/f\n@@ -2,3 +2,3 @@\n line 2\n-line 3\n+line three\n line 4\n"
        assert apply_patch(BEFORE, patch) == "line 1\nline 2\nline three\nline 4\nline 5\n"

    def test_create_from_empty(self):
        patch = "--- /dev/null\n+++ b/f\n@@ -0,0 +1,2 @@\n+hello\n+world\n"
        assert apply_patch("", patch) == "hello\nworld\n"

    def test_delete_all_lines(self):
        patch = "--- a/f\n+++ /dev/null\n@@ -1,2 +0,0 @@\n-a\n-b\n"
        assert apply_patch("a\nb\n", patch) == ""

    def test_offset_hunk_is_located(self):
        """A hunk whose declared line is off still applies where its context matches."""
        patch = "--- a/f\n+++ b/f\n@@ -1,2 +1,2 @@\n line 3\n-line 4\n+line four\n"
        assert apply_patch(BEFORE, patch) == "line 1\nline 2\nline 3\nline four\nline 5\n"

    def test_multiple_hunks(self):
        patch = (
            "--- a/f\n+++ b/f\n"
            "@@ -1,1 +1,1 @@\n-line 1\n+first\n"
            "@@ -5,1 +5,1 @@\n-line 5\n+last\n"
        )
        assert apply_patch(BEFORE, patch) == "first\nline 2\nline 3\nline 4\nlast\n"

    def test_no_newline_marker(self):
        patch = "--- a/f\n+++ b/f\n@@ -1 +1 @@\n-a\n+b\n\\ No newline at end of file\n"
        assert apply_patch("a\n", patch) == "b"

    def test_mismatched_context_raises(self):
        patch = "--- a/f\n+++ b/f\n@@ -1,1 +1,1 @@\n-not present\n+x\n"
        with pytest.raises(PatchApplyError, match="hunk 1 does not apply"):
            apply_patch(BEFORE, patch)

    def test_no_hunks_raises(self):
        with pytest.raises(PatchApplyError, match="no hunks"):
            apply_patch(BEFORE, "--- a/f\n+++ b/f\n")
