"""
Splits long transcripts into overlapping, size-bounded chunks.

Cuts prefer a paragraph break, then a sentence end, then any whitespace,
searched backwards from the size limit inside a tolerance window. Only when
none of those exist does the chunker cut hard at the limit. Each chunk after
the first starts `overlap_chars` before the previous cut so a phrase that
straddles the cut is fully contained in at least one chunk.

Offsets always refer to the text passed in. The non-overlapping parts of
the chunks, text[c.start + c.overlap:c.end], concatenate back to the input.
"""
import logging
import re
from typing import List, Optional

from teampulse.core.models import Chunk

logger = logging.getLogger("chunker")

DEFAULT_TOLERANCE_RATIO = 0.2

_PARAGRAPH_RE = re.compile(r"\n\s*\n")
_SENTENCE_RE = re.compile(r"[.!?…][\"'»)\]]*\s+")
_WHITESPACE_RE = re.compile(r"\s+")


def _last_match_end(pattern: re.Pattern, text: str, lo: int, hi: int) -> Optional[int]:
    last = None
    for match in pattern.finditer(text, lo, hi):
        last = match.end()
    return last


def _find_cut(text: str, lo: int, hi: int) -> int:
    """Best cut position in (lo, hi]; `hi` itself when nothing better exists."""
    for pattern in (_PARAGRAPH_RE, _SENTENCE_RE, _WHITESPACE_RE):
        cut = _last_match_end(pattern, text, lo, hi)
        if cut is not None and cut > lo:
            return cut
    return hi


def _word_start(text: str, pos: int, floor: int) -> int:
    """Move `pos` back to the start of the word it lands in, not below `floor`."""
    while pos > floor and not text[pos - 1].isspace() and not text[pos].isspace():
        pos -= 1
    return pos


def split(
    text: str,
    max_chunk_chars: int,
    overlap_chars: int,
    tolerance_chars: Optional[int] = None,
) -> List[Chunk]:
    if max_chunk_chars <= 0:
        raise ValueError("max_chunk_chars must be positive")
    if overlap_chars < 0:
        raise ValueError("overlap_chars must not be negative")
    if overlap_chars >= max_chunk_chars:
        raise ValueError("overlap_chars must be smaller than max_chunk_chars")

    if not text or not text.strip():
        return []

    length = len(text)
    if length <= max_chunk_chars:
        return [Chunk(index=0, start=0, end=length, text=text, overlap=0)]

    if tolerance_chars is None:
        tolerance_chars = max(1, int(max_chunk_chars * DEFAULT_TOLERANCE_RATIO))

    chunks: List[Chunk] = []
    start = 0
    previous_end = 0
    while True:
        limit = start + max_chunk_chars
        if limit >= length:
            end = length
        else:
            # Window must leave room past the overlap so the next chunk advances
            window_lo = max(start + overlap_chars + 1, limit - tolerance_chars)
            end = _find_cut(text, window_lo, limit)

        chunks.append(
            Chunk(
                index=len(chunks),
                start=start,
                end=end,
                text=text[start:end],
                overlap=previous_end - start if chunks else 0,
            )
        )
        if end >= length:
            break

        next_start = end - overlap_chars
        if overlap_chars:
            # Back up to a word start, never further than one more overlap
            next_start = _word_start(text, next_start, max(start + 1, next_start - overlap_chars))
        previous_end = end
        start = next_start

    logger.debug(f"Split {length} chars into {len(chunks)} chunks")
    return chunks
