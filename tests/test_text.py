"""Tests for pipeline text helpers: normalization, truncation, sentences."""

from __future__ import annotations

from factories import make_words
from src.proceedings.pipeline.text import normalize_text, split_sentences, truncate


class TestNormalizeText:
    def test_strips_punctuation_space_and_case(self):
        assert normalize_text("Thank you, Madam Chair!") == "thankyoumadamchair"

    def test_equal_after_reflowing(self):
        """Texts differing only in punctuation and spacing normalize equally."""
        assert normalize_text("I give the floor to Kenya.") == normalize_text(
            "I give the floor to  Kenya"
        )

    def test_letters_of_any_script_kept(self):
        assert normalize_text("Côte d'Ivoire") == "côtedivoire"
        assert normalize_text("Спасибо, Председатель!") == "спасибопредседатель"

    def test_underscores_removed(self):
        assert normalize_text("item_4") == "item4"


class TestTruncate:
    def test_short_text_untouched(self):
        assert truncate("short", 10) == "short"

    def test_long_text_cut_with_ellipsis(self):
        assert truncate("abcdefghij", 4) == "abcd..."


class TestSplitSentences:
    """Tests for split_sentences()."""

    def test_splits_on_terminators(self):
        """., ? and ! each close a sentence."""
        words = make_words("We agree. Do you? Yes! Fine")
        sentences = split_sentences(words)
        assert [s.text for s in sentences] == ["We agree.", "Do you?", "Yes!", "Fine"]

    def test_trailing_words_kept(self):
        """Words after the last terminator form a final sentence."""
        sentences = split_sentences(make_words("no terminator here"))
        assert len(sentences) == 1
        assert sentences[0].text == "no terminator here"

    def test_closing_quote_after_terminator(self):
        """A quote or bracket after the terminator still ends the sentence."""
        sentences = split_sentences(make_words('He said "enough." Then left'))
        assert [s.text for s in sentences] == ['He said "enough."', "Then left"]

    def test_timestamps_from_words(self):
        words = make_words("One. Two.", start_ms=1000)
        first, second = split_sentences(words)
        assert first.start_ms == 1000
        assert first.end_ms == words[0].end_ms
        assert second.start_ms == words[1].start_ms
        assert second.words == [words[1]]

    def test_no_words(self):
        assert split_sentences([]) == []
