"""
Reconciles findings from overlapping chunks into one highlight set.

Two findings describe the same highlight when they share category and label
(case and whitespace insensitive) and their spans overlap by more than half
of the shorter span. This catches a phrase that sits in the overlap region
of two chunks and is reported by both.

A merged highlight keeps the union span, the higher severity, and the id and
explanation of whichever occurrence arrived first. Arrival order never
changes spans or severities, only which explanation text wins.
"""
import hashlib
import logging
from typing import Dict, List, Tuple

from teampulse.core.errors import MergeInvariantViolation
from teampulse.core.models import Chunk, Finding, Highlight, normalize_label

logger = logging.getLogger("highlight_merger")

MERGE_OVERLAP_RATIO = 0.5


def overlap_length(a_start: int, a_end: int, b_start: int, b_end: int) -> int:
    return max(0, min(a_end, b_end) - max(a_start, b_start))


def is_same_highlight(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    shorter = min(a_end - a_start, b_end - b_start)
    if shorter <= 0:
        return False
    return overlap_length(a_start, a_end, b_start, b_end) > MERGE_OVERLAP_RATIO * shorter


def highlight_id(finding: Finding) -> str:
    raw = f"{finding.category.value}|{normalize_label(finding.label)}|{finding.global_start}|{finding.global_end}"
    return "hl_" + hashlib.sha1(raw.encode("utf-8")).hexdigest()[:12]


class HighlightMerger:
    def __init__(self, original_text: str):
        self.original_text = original_text
        self._by_identity: Dict[Tuple, List[Highlight]] = {}
        self.last_merge_count = 0

    def ingest(self, findings: List[Finding], chunk: Chunk) -> List[Highlight]:
        """
        Add one chunk's findings. Returns highlights seen for the first time;
        `last_merge_count` tells how many existing highlights changed.
        """
        new: List[Highlight] = []
        self.last_merge_count = 0

        for finding in findings:
            bucket = self._by_identity.setdefault(
                (finding.category, normalize_label(finding.label)), []
            )
            target = next(
                (
                    h for h in bucket
                    if is_same_highlight(h.global_start, h.global_end, finding.global_start, finding.global_end)
                ),
                None,
            )

            if target is None:
                highlight = Highlight(
                    id=highlight_id(finding),
                    category=finding.category,
                    label=finding.label,
                    severity=finding.severity,
                    explanation=finding.explanation,
                    global_start=finding.global_start,
                    global_end=finding.global_end,
                    text=self._slice(finding.global_start, finding.global_end),
                    source_chunks=[chunk.index],
                )
                bucket.append(highlight)
                new.append(highlight)
                continue

            changed = self._absorb(target, finding.global_start, finding.global_end, finding.severity, [chunk.index])
            if changed:
                self._cascade(bucket, target)
                self.last_merge_count += 1

        return new

    def snapshot(self) -> List[Highlight]:
        """Current canonical list, sorted, without the final overlap pass."""
        return self._sorted([h.model_copy(deep=True) for bucket in self._by_identity.values() for h in bucket])

    def finalize(self) -> List[Highlight]:
        for bucket in self._by_identity.values():
            self._coalesce(bucket)
        result = self._sorted([h.model_copy(deep=True) for bucket in self._by_identity.values() for h in bucket])
        self.check_invariants(result)
        return result

    @staticmethod
    def check_invariants(highlights: List[Highlight]) -> None:
        previous_start = -1
        last_end_by_identity: Dict[Tuple, int] = {}
        for h in highlights:
            if h.global_start < previous_start:
                raise MergeInvariantViolation(f"highlights out of order at {h.id}")
            previous_start = h.global_start
            if h.global_end <= h.global_start:
                raise MergeInvariantViolation(f"empty span for {h.id}")
            last_end = last_end_by_identity.get(h.identity)
            if last_end is not None and h.global_start < last_end:
                raise MergeInvariantViolation(f"overlapping spans for {h.identity} at {h.id}")
            last_end_by_identity[h.identity] = max(h.global_end, last_end or 0)

    def _absorb(self, target: Highlight, start: int, end: int, severity: int, chunks: List[int]) -> bool:
        before = (target.global_start, target.global_end, target.severity, tuple(target.source_chunks))
        target.global_start = min(target.global_start, start)
        target.global_end = max(target.global_end, end)
        target.severity = max(target.severity, severity)
        target.source_chunks = sorted(set(target.source_chunks) | set(chunks))
        target.text = self._slice(target.global_start, target.global_end)
        return before != (target.global_start, target.global_end, target.severity, tuple(target.source_chunks))

    def _cascade(self, bucket: List[Highlight], target: Highlight) -> None:
        """A grown span may now qualify against other highlights in the bucket."""
        merged = True
        while merged:
            merged = False
            for other in list(bucket):
                if other is target:
                    continue
                if is_same_highlight(target.global_start, target.global_end, other.global_start, other.global_end):
                    self._absorb(target, other.global_start, other.global_end, other.severity, other.source_chunks)
                    bucket.remove(other)
                    merged = True

    def _coalesce(self, bucket: List[Highlight]) -> None:
        """Fold any remaining overlap so same-identity spans are disjoint."""
        # Sorting by start keeps the earliest-seen position in the bucket as tie-break
        ordered = sorted(enumerate(bucket), key=lambda pair: (pair[1].global_start, pair[0]))
        survivors: List[Tuple[int, Highlight]] = []
        for order, h in ordered:
            if survivors and h.global_start < survivors[-1][1].global_end:
                keep_order, keep = survivors[-1]
                if order < keep_order:
                    # Earlier arrival keeps its id and explanation
                    self._absorb(h, keep.global_start, keep.global_end, keep.severity, keep.source_chunks)
                    survivors[-1] = (order, h)
                else:
                    self._absorb(keep, h.global_start, h.global_end, h.severity, h.source_chunks)
                continue
            survivors.append((order, h))
        bucket[:] = [h for _, h in sorted(survivors, key=lambda pair: pair[0])]

    def _slice(self, start: int, end: int) -> str:
        return self.original_text[start:end]

    @staticmethod
    def _sorted(highlights: List[Highlight]) -> List[Highlight]:
        return sorted(highlights, key=lambda h: (h.global_start, h.global_end, h.id))
