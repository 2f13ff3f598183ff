from teampulse.core.text import count_words, detect_participants, normalize_text


def test_normalize_text():
    raw = "  Anna: this is a nego-\ntiation   \r\nabout price\n\n\n\n\nMark: ok  "

    assert normalize_text(raw) == "Anna: this is a negotiation\nabout price\n\nMark: ok"


def test_normalize_empty():
    assert normalize_text("") == ""


def test_count_words():
    assert count_words("one  two\nthree") == 3


def test_detect_participants_from_common_formats():
    text = (
        "Anna: the offer is only valid today\n"
        "Mark - we need more time to review\n"
        "[Olga] let's talk about the budget\n"
        "Peter> fine by me\n"
        "Subject: contract\n"
        "CEO: this must not count\n"
        "Anna: last call"
    )

    assert detect_participants(text) == ["Anna", "Mark", "Olga", "Peter"]


def test_detect_participants_cyrillic():
    text = "Олена: ціна остаточна\nІван: треба подумати"

    assert detect_participants(text) == ["Іван", "Олена"]


def test_detect_participants_short_text():
    assert detect_participants("A: hi") == []
