#!/usr/bin/env python3
"""
URL Changes

Finds URLs in comment blocks and classifies, for one file and one commit,
which of them were added, deleted or replaced.

- URL candidates run from "http" to the end of the comment line and are
  trimmed of trailing delimiters in a fixed order
- Line-based edit scripts come from unified diff hunks (git, GitHub) or
  from difflib when no patch is available
- Old and new occurrences are aligned against the edit script hunks
"""

import difflib
import re
from bisect import bisect_right
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from comment_reader import CommentBlock


# ============================================================================
# URL EXTRACTION
# ============================================================================

@dataclass(frozen=True)
class UrlOccurrence:
    """A URL found in a comment. line is the absolute source line of the URL."""
    url: str
    line: int
    comment_start_line: int


# Each delimiter cuts the candidate at its last occurrence, in this order
TRAILING_DELIMITERS = (',', ')', '(', '"', '>', "'", '}', ']')


def trim_url(candidate: str) -> str:
    """
    Remove trailing delimiters from a URL candidate.
    The order matters: "http://x.com/a)." loses ")." at the ')' step,
    so the '.' step finds nothing left to strip.
    """
    if candidate.endswith('\r'):
        candidate = candidate[:-1]
    for separator in (' ', '\t'):
        index = candidate.find(separator)
        if index > 0:
            candidate = candidate[:index]
    for delimiter in TRAILING_DELIMITERS:
        index = candidate.rfind(delimiter)
        if index > 0:
            candidate = candidate[:index]
    if candidate.endswith('.'):
        candidate = candidate[:-1]
    if candidate.endswith('\\'):
        candidate = candidate[:-1]
    return candidate


def extract_urls(blocks: Iterable[CommentBlock]) -> List[UrlOccurrence]:
    """
    Extract URL occurrences in block order, then in text order within a block.
    Only the first "http" of each comment line is taken.
    """
    occurrences: List[UrlOccurrence] = []
    for block in blocks:
        text = block.text
        index = text.find('http')
        while index >= 0:
            end = text.find('\n', index)
            if end < 0:
                end = len(text)
            line = block.start_line + text.count('\n', 0, index)
            occurrences.append(UrlOccurrence(trim_url(text[index:end]), line, block.start_line))
            index = text.find('http', end + 1)
    return occurrences


# ============================================================================
# EDIT SCRIPTS
# ============================================================================

class EditKind(Enum):
    INSERT = "INSERT"
    DELETE = "DELETE"
    REPLACE = "REPLACE"


@dataclass(frozen=True)
class EditOp:
    """
    One hunk of a line diff. Ranges are half-open and 0-based, so the
    affected 1-based lines are old_begin+1 .. old_end and new_begin+1 .. new_end.
    """
    kind: EditKind
    old_begin: int
    old_end: int
    new_begin: int
    new_end: int

    def old_span(self) -> Tuple[int, int]:
        return self.old_begin, self.old_end

    def new_span(self) -> Tuple[int, int]:
        return self.new_begin, self.new_end


def _make_edit(old_begin: int, old_end: int, new_begin: int, new_end: int) -> EditOp:
    if old_begin == old_end:
        kind = EditKind.INSERT
    elif new_begin == new_end:
        kind = EditKind.DELETE
    else:
        kind = EditKind.REPLACE
    return EditOp(kind, old_begin, old_end, new_begin, new_end)


HUNK_RE = re.compile(r"^@@\s*-(\d+)(?:,(\d+))?\s+\+(\d+)(?:,(\d+))?\s*@@")


def _iter_hunk_lines(patch: str) -> Iterator[Tuple[str, int, int, str]]:
    """
    Walk the body lines of every hunk of a single-file unified diff.
    Yields (tag, old_index, new_index, text) where tag is '-', '+' or ' ' and
    the indexes are the 0-based positions before the line is consumed.
    """
    old_index = new_index = 0
    old_remaining = new_remaining = 0

    for line in patch.split('\n'):
        m = HUNK_RE.match(line)
        if m:
            old_start, old_len = int(m.group(1)), int(m.group(2) or "1")
            new_start, new_len = int(m.group(3)), int(m.group(4) or "1")
            # A zero-length side names the line *before* the hunk
            old_index = old_start - 1 if old_len > 0 else old_start
            new_index = new_start - 1 if new_len > 0 else new_start
            old_remaining, new_remaining = old_len, new_len
            continue
        if old_remaining <= 0 and new_remaining <= 0:
            continue
        if line.startswith('\\'):
            continue  # "\ No newline at end of file"

        if line.startswith('-'):
            yield '-', old_index, new_index, line[1:]
            old_index += 1
            old_remaining -= 1
        elif line.startswith('+'):
            yield '+', old_index, new_index, line[1:]
            new_index += 1
            new_remaining -= 1
        else:
            yield ' ', old_index, new_index, line[1:]
            old_index += 1
            new_index += 1
            old_remaining -= 1
            new_remaining -= 1


def edit_script_from_patch(patch: Optional[str]) -> List[EditOp]:
    """
    Convert a single-file unified diff into edit operations.
    Every maximal run of removed/added lines becomes one operation.
    """
    ops: List[EditOp] = []
    if not patch:
        return ops

    run: Optional[List[int]] = None  # [old_begin, old_end, new_begin, new_end]
    for tag, old_index, new_index, _text in _iter_hunk_lines(patch):
        if tag == ' ':
            if run is not None:
                ops.append(_make_edit(*run))
                run = None
            continue
        if run is None or run[1] != old_index or run[3] != new_index:
            if run is not None:
                ops.append(_make_edit(*run))
            run = [old_index, old_index, new_index, new_index]
        if tag == '-':
            run[1] += 1
        else:
            run[3] += 1
    if run is not None:
        ops.append(_make_edit(*run))
    return ops


def edit_script_from_text(old_text: str, new_text: str) -> List[EditOp]:
    """Compute a line edit script with difflib (used when no patch is available)."""
    matcher = difflib.SequenceMatcher(None, old_text.split('\n'), new_text.split('\n'), autojunk=False)
    return [
        _make_edit(i1, i2, j1, j2)
        for tag, i1, i2, j1, j2 in matcher.get_opcodes()
        if tag != 'equal'
    ]


def patch_mentions_url(patch: Optional[str]) -> bool:
    """True if any hunk line of the patch, context lines included, contains "http"."""
    if not patch:
        return False
    return any('http' in text for _tag, _o, _n, text in _iter_hunk_lines(patch))


# ============================================================================
# CHANGE CLASSIFICATION
# ============================================================================

class ChangeType(Enum):
    ADDED = "ADDED"
    DELETED = "DELETED"
    REPLACED = "REPLACED"
    REPLACED_AND_ADDED = "REPLACED_AND_ADDED"


@dataclass(frozen=True)
class ChangeRecord:
    change_type: ChangeType
    old: Optional[UrlOccurrence] = None
    new: Tuple[UrlOccurrence, ...] = ()

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"Type": self.change_type.value}
        if self.old is not None:
            out["OldURL"] = self.old.url
            out["OldLine"] = self.old.line
            out["OldCommentLine"] = self.old.comment_start_line
        if self.change_type is ChangeType.REPLACED_AND_ADDED:
            out["NewURLCount"] = len(self.new)
            for i, occurrence in enumerate(self.new, 1):
                out[f"NewURL{i}"] = occurrence.url
                out[f"NewLine{i}"] = occurrence.line
                out[f"NewCommentLine{i}"] = occurrence.comment_start_line
        elif self.new:
            out["NewURL"] = self.new[0].url
            out["NewLine"] = self.new[0].line
            out["NewCommentLine"] = self.new[0].comment_start_line
        return out


def _locate(
    occurrences: Sequence[UrlOccurrence],
    ops: Sequence[EditOp],
    span: Callable[[EditOp], Tuple[int, int]],
) -> Iterator[Tuple[UrlOccurrence, Optional[EditOp]]]:
    """
    Pair each occurrence with the operation whose 1-based range contains its line.
    Both inputs are sorted by line, so the cursor only moves forward.
    """
    cursor = 0
    for occurrence in occurrences:
        while cursor < len(ops) and span(ops[cursor])[1] < occurrence.line:
            cursor += 1
        op = None
        if cursor < len(ops):
            begin, end = span(ops[cursor])
            if begin < occurrence.line <= end:
                op = ops[cursor]
        yield occurrence, op


def _in_range(occurrences: Sequence[UrlOccurrence], lines: Sequence[int], begin: int, end: int) -> List[UrlOccurrence]:
    return list(occurrences[bisect_right(lines, begin):bisect_right(lines, end)])


def classify_changes(
    old_occurrences: Sequence[UrlOccurrence],
    new_occurrences: Sequence[UrlOccurrence],
    edit_script: Sequence[EditOp],
) -> List[ChangeRecord]:
    """
    Classify URL changes between two revisions of a file.

    Old occurrences inside a DELETE hunk are DELETED. Inside a REPLACE hunk
    an old URL is unchanged if some new URL of the hunk is identical;
    otherwise it is REPLACED by the single new URL of the hunk,
    REPLACED_AND_ADDED by all of them when there are several, or DELETED
    when there are none. New occurrences inside an INSERT hunk, or inside a
    REPLACE hunk with no old URLs, are ADDED. Candidates are compared in
    line order; no minimal matching between URL sets is attempted.
    """
    if not old_occurrences:
        return [ChangeRecord(ChangeType.ADDED, new=(o,)) for o in new_occurrences]
    if not new_occurrences:
        return [ChangeRecord(ChangeType.DELETED, old=o) for o in old_occurrences]

    old_sorted = sorted(old_occurrences, key=lambda o: o.line)
    new_sorted = sorted(new_occurrences, key=lambda o: o.line)
    old_lines = [o.line for o in old_sorted]
    new_lines = [o.line for o in new_sorted]
    records: List[ChangeRecord] = []

    old_side_ops = sorted((op for op in edit_script if op.kind is not EditKind.INSERT), key=lambda op: op.old_begin)
    for occurrence, op in _locate(old_sorted, old_side_ops, EditOp.old_span):
        if op is None:
            continue
        if op.kind is EditKind.DELETE:
            records.append(ChangeRecord(ChangeType.DELETED, old=occurrence))
            continue

        candidates = _in_range(new_sorted, new_lines, op.new_begin, op.new_end)
        if any(c.url == occurrence.url for c in candidates):
            continue  # moved within the hunk
        if len(candidates) == 1:
            records.append(ChangeRecord(ChangeType.REPLACED, old=occurrence, new=(candidates[0],)))
        elif not candidates:
            records.append(ChangeRecord(ChangeType.DELETED, old=occurrence))
        else:
            records.append(ChangeRecord(ChangeType.REPLACED_AND_ADDED, old=occurrence, new=tuple(candidates)))

    new_side_ops = sorted((op for op in edit_script if op.kind is not EditKind.DELETE), key=lambda op: op.new_begin)
    for occurrence, op in _locate(new_sorted, new_side_ops, EditOp.new_span):
        if op is None:
            continue
        if op.kind is EditKind.INSERT or not _in_range(old_sorted, old_lines, op.old_begin, op.old_end):
            records.append(ChangeRecord(ChangeType.ADDED, new=(occurrence,)))

    return records
