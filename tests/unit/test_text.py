"""
Unit tests for ltm/text.py

Tests the reply sanitizing and exchange-record helpers.
"""

from ltm.text import (
    build_exchange_record,
    collapse_whitespace,
    first_sentence,
    sanitize_response,
    strip_data_url,
    strip_emoji,
)


class TestStripEmoji:
    """Tests for strip_emoji function."""

    def test_removes_pictographs(self):
        """Test common emoji are removed."""
        assert strip_emoji("Hi \U0001F600 there \U0001F680") == "Hi  there "

    def test_removes_symbols_and_joiners(self):
        """Test dingbats, variation selectors and joiners are removed."""
        text = "Sun \U00002600\U0000FE0F family \U0001F468\U0000200D\U0001F469"
        assert strip_emoji(text) == "Sun  family "

    def test_keeps_plain_text(self):
        """Test ordinary text and punctuation are untouched."""
        text = "Caf\U000000E9 au lait, 3 cups? Yes!"
        assert strip_emoji(text) == text


class TestCollapseWhitespace:
    """Tests for collapse_whitespace function."""

    def test_collapses_runs(self):
        """Test runs of 2+ whitespace become one space."""
        assert collapse_whitespace("a  b\n\nc\t \td") == "a b c d"

    def test_single_whitespace_kept(self):
        """Test single newlines and spaces are preserved."""
        assert collapse_whitespace("a b\nc") == "a b\nc"


class TestSanitizeResponse:
    """Tests for sanitize_response function."""

    def test_full_pipeline(self):
        """Test emoji removal, collapsing and trimming together."""
        reply = "  Sure thing!  \U0001F600\n\nI remember.  "
        assert sanitize_response(reply) == "Sure thing! I remember."

    def test_emoji_only_becomes_empty(self):
        """Test a reply of only emoji sanitizes to an empty string."""
        assert sanitize_response("\U0001F600 \U0001F44D") == ""


class TestFirstSentence:
    """Tests for first_sentence function."""

    def test_splits_on_terminators(self):
        """Test sentence ends at . ! ? or newline."""
        assert first_sentence("Hello there. How are you?") == "Hello there"
        assert first_sentence("Wow! Really") == "Wow"
        assert first_sentence("Line one\nLine two") == "Line one"

    def test_skips_empty_segments(self):
        """Test leading punctuation does not produce an empty sentence."""
        assert first_sentence("...  Hello. World") == "Hello"

    def test_no_content(self):
        """Test text with no sentence content returns empty string."""
        assert first_sentence("") == ""
        assert first_sentence("?!. \n") == ""


class TestStripDataUrl:
    """Tests for strip_data_url function."""

    def test_strips_envelope(self):
        """Test the data-URL prefix is removed."""
        assert strip_data_url("data:image/png;base64,iVBORw0KGgo=") == "iVBORw0KGgo="
        assert strip_data_url("data:image/jpeg;base64,/9j/4AAQ") == "/9j/4AAQ"

    def test_raw_base64_unchanged(self):
        """Test raw base64 passes through."""
        assert strip_data_url("iVBORw0KGgo=") == "iVBORw0KGgo="


class TestBuildExchangeRecord:
    """Tests for build_exchange_record function."""

    def test_record_format(self):
        """Test the compact record layout uses the first reply sentence."""
        record = build_exchange_record(
            "My cat is called Miso and she is four",
            "Miso is a lovely name! How long have you had her?",
        )
        assert record == (
            'Log - Human stated: "My cat is called Miso and she is four" '
            '| AI replied: "Miso is a lovely name"'
        )

    def test_reply_is_sanitized_first(self):
        """Test emoji and whitespace runs are stripped before splitting."""
        record = build_exchange_record(
            "Please remember that I moved to Lisbon",
            "\U0001F3E0  Noted,   Lisbon it is.\n\nAnything else?",
        )
        assert record.endswith('AI replied: "Noted, Lisbon it is"')

    def test_no_sentence_returns_none(self):
        """Test a reply with no usable sentence yields no record."""
        assert build_exchange_record("A long enough user message", "\U0001F600\U0001F600") is None
        assert build_exchange_record("A long enough user message", " ... ") is None
