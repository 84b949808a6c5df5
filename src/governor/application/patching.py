"""In-memory unified diff application.

Patches are applied to a pre-image string and return the post-image; nothing
touches the filesystem here. A hunk whose context or removed lines do not
match the pre-image raises ``PatchApplyError``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from ..errors import PatchApplyError

_HUNK_RE = re.compile(r"^@@\s+-(\d+)(?:,(\d+))?\s+\+(\d+)(?:,(\d+))?\s+@@")
_NO_NEWLINE = "\\ No newline at end of file"


@dataclass
class HunkLine:
    tag: str  # " ", "-" or "+"
    text: str
    no_newline: bool = False


@dataclass
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: list[HunkLine] = field(default_factory=list)

    @property
    def old_lines(self) -> list[str]:
        return [ln.text for ln in self.lines if ln.tag in (" ", "-")]


@dataclass(frozen=True)
class DiffTarget:
    """Paths named by the ``---``/``+++`` headers; None stands for /dev/null."""

    old_path: str | None
    new_path: str | None

    @property
    def change_type(self) -> str:
        if self.old_path is None and self.new_path:
            return "create"
        if self.old_path and self.new_path is None:
            return "delete"
        return "modify"


def clean_patch(diff: str) -> str:
    cleaned = diff.replace("\r\n", "\n").replace("\r", "\n")
    stripped = cleaned.strip()
    if stripped.startswith("```"):
        cleaned = stripped.split("\n", 1)[-1].rsplit("```", 1)[0]
    if not cleaned.endswith("\n"):
        cleaned += "\n"
    return cleaned


def parse_diff_target(patch_text: str) -> DiffTarget:
    old_match = re.search(r"^---\s+([^\t\n\r]+)", patch_text, re.M)
    new_match = re.search(r"^\+\+\+\s+([^\t\n\r]+)", patch_text, re.M)

    def strip_prefix(s: str) -> str | None:
        s = s.strip()
        if s.startswith("a/") or s.startswith("b/"):
            s = s[2:]
        return None if s == "/dev/null" else s

    old_path = strip_prefix(old_match.group(1)) if old_match else None
    new_path = strip_prefix(new_match.group(1)) if new_match else None
    return DiffTarget(old_path=old_path, new_path=new_path)


def parse_hunks(patch_text: str) -> list[Hunk]:
    lines = clean_patch(patch_text).split("\n")
    hunks: list[Hunk] = []
    i = 0
    while i < len(lines):
        match = _HUNK_RE.match(lines[i])
        if not match:
            i += 1
            continue

        hunk = Hunk(
            old_start=int(match.group(1)),
            old_count=int(match.group(2) if match.group(2) is not None else "1"),
            new_start=int(match.group(3)),
            new_count=int(match.group(4) if match.group(4) is not None else "1"),
        )
        old_left, new_left = hunk.old_count, hunk.new_count
        i += 1
        while old_left > 0 or new_left > 0:
            if i >= len(lines):
                raise PatchApplyError(f"truncated hunk at -{hunk.old_start}")
            raw = lines[i]
            if raw.startswith("\\"):
                if hunk.lines:
                    hunk.lines[-1].no_newline = True
                i += 1
                continue
            # Some tools strip the single space from blank context lines.
            tag, text = (raw[0], raw[1:]) if raw else (" ", "")
            if tag == " ":
                old_left -= 1
                new_left -= 1
            elif tag == "-":
                old_left -= 1
            elif tag == "+":
                new_left -= 1
            else:
                raise PatchApplyError(f"malformed hunk line: {raw[:40]!r}")
            if old_left < 0 or new_left < 0:
                raise PatchApplyError(f"hunk line counts do not match header at -{hunk.old_start}")
            hunk.lines.append(HunkLine(tag=tag, text=text))
            i += 1
        if i < len(lines) and lines[i].startswith(_NO_NEWLINE[:2]) and hunk.lines:
            hunk.lines[-1].no_newline = True
            i += 1
        hunks.append(hunk)
    return hunks


def _matches_at(src: list[str], old: list[str], at: int) -> bool:
    if at < 0 or at + len(old) > len(src):
        return False
    return all(src[at + k].rstrip("\r\n") == old[k] for k in range(len(old)))


def _locate(src: list[str], old: list[str], expected: int, floor: int) -> int | None:
    expected = max(expected, floor)
    if _matches_at(src, old, expected):
        return expected
    for delta in range(1, len(src) + 1):
        for at in (expected - delta, expected + delta):
            if at >= floor and _matches_at(src, old, at):
                return at
    return None


def apply_patch(before: str, patch_text: str) -> str:
    """Apply a unified diff to ``before`` and return the patched text.

    Hunks are tried at their declared position first, then at the nearest
    offset where their context matches.
    """
    hunks = parse_hunks(patch_text)
    if not hunks:
        raise PatchApplyError("no hunks found in patch")

    src = before.splitlines(keepends=True)
    out: list[str] = []
    pos = 0
    offset = 0
    for n, hunk in enumerate(hunks, start=1):
        declared = hunk.old_start if hunk.old_count == 0 else hunk.old_start - 1
        at = _locate(src, hunk.old_lines, declared + offset, pos)
        if at is None:
            raise PatchApplyError(f"hunk {n} does not apply at line {hunk.old_start}")
        offset = at - declared
        out.extend(src[pos:at])

        idx = at
        for ln in hunk.lines:
            if ln.tag == " ":
                line = src[idx]
                if ln.no_newline:
                    line = line.rstrip("\r\n")
                out.append(line)
                idx += 1
            elif ln.tag == "-":
                idx += 1
            else:
                out.append(ln.text if ln.no_newline else ln.text + "\n")
        pos = idx

    out.extend(src[pos:])
    return "".join(out)
