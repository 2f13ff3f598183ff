import math
import re

# System prompt, JSON scaffolding and profile context sent with every request
PROMPT_OVERHEAD_TOKENS = 1200

_WHITESPACE_RE = re.compile(r"\s+")
_WORD_RE = re.compile(r"\b\w+\b")
_PUNCT_RE = re.compile(r"[^\w\s]")
_CYRILLIC_RE = re.compile(r"[Ѐ-ӿ]")


def estimate_tokens(text: str) -> int:
    """
    Rough token count for budgeting.

    Short words count as one token, medium words as 1.5 and long words as 2,
    punctuation as half a token, plus 10% of the character length for
    structure. Cyrillic text is scaled up by 1.3.
    """
    if not text:
        return 0
    normalized = _WHITESPACE_RE.sub(" ", text).strip()
    if not normalized:
        return 0

    count = 0.0
    for word in _WORD_RE.findall(normalized):
        if len(word) <= 4:
            count += 1
        elif len(word) <= 8:
            count += 1.5
        else:
            count += 2
    count += len(_PUNCT_RE.findall(normalized)) * 0.5
    count += math.ceil(len(normalized) * 0.1)

    if _CYRILLIC_RE.search(normalized):
        count *= 1.3

    return max(1, math.ceil(count))
