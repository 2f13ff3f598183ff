"""
Transcript text helpers: normalization before analysis and speaker detection.
"""
import re
from typing import List

_CR_RE = re.compile(r"\r")
_HYPHEN_BREAK_RE = re.compile(r"-\n")
_TRAILING_SPACE_RE = re.compile(r"[ \t]+\n")
_EXTRA_BLANK_LINES_RE = re.compile(r"\n{3,}")

_NAME = r"[A-ZА-ЯЁІЇЄҐ][a-zA-Zа-яёА-ЯЁіїєґІЇЄҐ '\-]{1,48}"
SPEAKER_PATTERNS = [
    re.compile(rf"^({_NAME}):", re.MULTILINE),        # "Name:"
    re.compile(rf"^({_NAME})\s*-\s+", re.MULTILINE),  # "Name - "
    re.compile(rf"\[({_NAME})\]"),                    # "[Name]"
    re.compile(rf"^({_NAME})>", re.MULTILINE),        # "Name>"
]
EXCLUDED_SPEAKERS = {
    "Re", "Fw", "Fwd", "Subject", "From", "To", "Date",
    "Sent", "Received", "CC", "BCC", "Attachment", "Email",
}
_ALL_CAPS_RE = re.compile(r"^[A-ZА-ЯЁ]{2,}$")


def normalize_text(text: str) -> str:
    if not text:
        return ""
    text = _CR_RE.sub("", text)
    text = _HYPHEN_BREAK_RE.sub("", text)
    text = _TRAILING_SPACE_RE.sub("\n", text)
    text = _EXTRA_BLANK_LINES_RE.sub("\n\n", text)
    return text.strip()


def count_words(text: str) -> int:
    return len(text.split())


def detect_participants(text: str) -> List[str]:
    """Return the sorted speaker names found in a transcript."""
    if not text or len(text) < 10:
        return []

    participants = set()
    for pattern in SPEAKER_PATTERNS:
        for match in pattern.finditer(text):
            name = match.group(1).strip()
            if (
                2 <= len(name) <= 50
                and name not in EXCLUDED_SPEAKERS
                and not name[0].isdigit()
                and not _ALL_CAPS_RE.match(name)
            ):
                participants.add(name)
    return sorted(participants)
