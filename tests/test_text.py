# tests/test_text.py
from inbox.core.ingestion.domain import Channel
from inbox.core.ingestion.text import (
    CHANNEL_MAX_LENGTH,
    TRUNCATION_MARKER,
    normalize_phone,
    truncate_for_channel,
    truncate_text,
)


class TestNormalizePhone:
    def test_strips_formatting(self):
        assert normalize_phone("52 1 55-1234-5678") == "+5215512345678"

    def test_keeps_single_plus(self):
        assert normalize_phone("++5215512345678") == "+5215512345678"
        assert normalize_phone("+1 (555) 010-9999") == "+15550109999"


class TestTruncateText:
    def test_short_text_unchanged(self):
        assert truncate_text("Hola", 100) == "Hola"

    def test_exact_length_unchanged(self):
        text = "a" * 50
        assert truncate_text(text, 50) == text

    def test_long_text_ends_with_marker(self):
        text = "palabra " * 200
        result = truncate_text(text, 100)
        assert len(result) <= 100
        assert result.endswith(TRUNCATION_MARKER)

    def test_prefers_sentence_boundary(self):
        text = ("Primera frase completa. " * 3) + ("x" * 200)
        result = truncate_text(text, 90)
        assert result == "Primera frase completa. Primera frase completa. Primera frase completa. [truncated]"

    def test_falls_back_to_word_boundary(self):
        text = "uno dos tres cuatro cinco seis siete ocho nueve diez once doce trece catorce"
        result = truncate_text(text, 40)
        assert result.endswith(" [truncated]")
        assert len(result) <= 40
        # no word is cut in half
        assert result[: -len(" [truncated]")] in text
        assert text[len(result) - len(" [truncated]")] == " "

    def test_hard_cut_without_spaces(self):
        result = truncate_text("x" * 500, 100)
        assert result == "x" * 88 + " [truncated]"


class TestTruncateForChannel:
    def test_whatsapp_limit(self):
        result = truncate_for_channel(Channel.WHATSAPP, "a " * 5000)
        assert len(result) <= CHANNEL_MAX_LENGTH[Channel.WHATSAPP]
        assert result.endswith(TRUNCATION_MARKER)

    def test_instagram_limit_is_shorter(self):
        text = "b" * 1500
        assert truncate_for_channel(Channel.WHATSAPP, text) == text
        result = truncate_for_channel(Channel.INSTAGRAM, text)
        assert len(result) == 1000
        assert result.endswith(TRUNCATION_MARKER)
