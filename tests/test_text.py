"""Tests for the explicit-text classifier."""
import pytest

from evidence_guard.cache import MemoryStore, TieredCache
from evidence_guard.errors import UnsupportedInputType
from evidence_guard.results import TextMethod
from evidence_guard.text import ExplicitTextClassifier, KeywordMatcher, model_signals

from conftest import CountingModel, runtime_for


@pytest.fixture
def classifier():
    """A keyword-only classifier."""
    return ExplicitTextClassifier()


def with_model(output=None, error=None):
    model = CountingModel(output, error)
    return ExplicitTextClassifier(runtime=runtime_for(model)), model


class TestKeywordPath:
    """Tests for the deterministic keyword and pattern matcher."""

    @pytest.mark.asyncio
    async def test_affectionate_message_is_safe(self, classifier):
        result = await classifier.classify("I love you so much")
        assert result.is_explicit is False
        assert result.method is TextMethod.KEYWORD_FALLBACK
        assert result.matched_terms == []

    @pytest.mark.asyncio
    async def test_solicitation_is_explicit(self, classifier):
        result = await classifier.classify("let's have fuck tonight, send nude pic")
        assert result.is_explicit is True
        assert result.confidence >= 0.6

    @pytest.mark.asyncio
    async def test_two_keywords_in_long_message(self, classifier):
        text = (
            "we walked along the river for hours and talked about the porn "
            "documentary and some naked statues in the old museum downtown"
        )
        result = await classifier.classify(text)
        assert result.is_explicit is True
        assert result.confidence >= 0.6
        assert set(result.matched_terms) >= {"porn", "naked"}

    @pytest.mark.asyncio
    async def test_single_keyword_in_long_message_is_tolerated(self, classifier):
        text = "that movie last night had one shit scene but the rest of it was lovely and fun"
        result = await classifier.classify(text)
        assert result.is_explicit is False

    @pytest.mark.asyncio
    async def test_matched_terms_are_capped(self, classifier):
        result = await classifier.classify("sex porn nude naked erotic horny kinky fetish")
        assert result.is_explicit is True
        assert len(result.matched_terms) == 5

    @pytest.mark.asyncio
    async def test_reasoning_is_present(self, classifier):
        result = await classifier.classify("dinner at eight?")
        assert result.reasoning.startswith("Keyword analysis")

    def test_pattern_matches_weigh_double(self):
        matcher = KeywordMatcher([], [r"\bdick\s+pics?\b"])
        matches, words, matched = matcher.score("no dick pics please")
        assert matches == 2
        assert words == 4
        assert matched == ["dick pics"]

    @pytest.mark.asyncio
    async def test_update_keywords(self, classifier):
        assert (await classifier.classify("spicy spicy")).is_explicit is False
        classifier.update_keywords(["spicy"])
        assert (await classifier.classify("spicy spicy")).is_explicit is True

    @pytest.mark.asyncio
    async def test_update_keywords_skips_persisted_verdicts(self):
        store = MemoryStore()
        classifier = ExplicitTextClassifier(cache=TieredCache("text", backend=store))
        assert (await classifier.classify("zorblat zorblat tonight")).is_explicit is False
        classifier.update_keywords(["zorblat"])
        assert (await classifier.classify("zorblat zorblat tonight")).is_explicit is True
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_same_keywords_share_persisted_verdicts(self):
        store = MemoryStore()
        first = ExplicitTextClassifier(cache=TieredCache("text", backend=store))
        await first.classify("see you at dinner")
        second = ExplicitTextClassifier(cache=TieredCache("text", backend=store))
        await second.classify("see you at dinner")
        assert len(store) == 1
        assert len(second.cache) == 1

    @pytest.mark.asyncio
    async def test_positive_terms_in_reasoning(self, classifier):
        result = await classifier.classify("I miss you, love you forever")
        assert result.is_explicit is False
        assert result.reasoning == (
            "Keyword analysis: 0 explicit matches, 3 positive terms in 6 words"
            " (positive: miss, love, forever)"
        )

    @pytest.mark.asyncio
    async def test_update_positive_keywords(self, classifier):
        classifier.update_positive_keywords(["sunshine"])
        result = await classifier.classify("morning sunshine")
        assert "1 positive terms" in result.reasoning


class TestEdgeCases:
    """Tests for empty and invalid input."""

    @pytest.mark.asyncio
    async def test_empty_text_short_circuits(self):
        classifier, model = with_model([{"label": "NSFW", "score": 0.99}])
        result = await classifier.classify("   \n ")
        assert result.is_explicit is False
        assert result.confidence == pytest.approx(0.9)
        assert model.calls == 0
        assert len(classifier.cache) == 0

    @pytest.mark.asyncio
    async def test_non_string_rejected(self, classifier):
        with pytest.raises(UnsupportedInputType):
            await classifier.classify(b"bytes are not text")


class TestFusion:
    """Tests for combining the model with the keyword path."""

    @pytest.mark.asyncio
    async def test_model_flags_explicit(self):
        classifier, _ = with_model([{"label": "NSFW", "score": 0.92}])
        result = await classifier.classify("come over and show me everything")
        assert result.is_explicit is True
        assert result.method is TextMethod.MODEL
        assert result.confidence == pytest.approx(0.92)

    @pytest.mark.asyncio
    async def test_model_below_threshold_is_safe(self):
        classifier, _ = with_model([{"label": "SFW", "score": 0.95}])
        result = await classifier.classify("see you at the airport")
        assert result.is_explicit is False
        assert result.method is TextMethod.MODEL
        assert result.confidence == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_keyword_verdict_wins(self):
        classifier, _ = with_model([{"label": "SFW", "score": 0.9}])
        result = await classifier.classify("send nudes, so horny")
        assert result.is_explicit is True
        assert result.method is TextMethod.FUSED
        assert result.confidence >= 0.6

    @pytest.mark.asyncio
    async def test_model_failure_falls_back_to_keywords(self):
        classifier, model = with_model(error=RuntimeError("tokenizer crashed"))
        result = await classifier.classify("good morning sunshine")
        assert model.calls == 1
        assert result.method is TextMethod.KEYWORD_FALLBACK
        assert result.is_explicit is False

    @pytest.mark.asyncio
    async def test_results_are_cached(self):
        classifier, model = with_model([{"label": "SFW", "score": 0.8}])
        first = await classifier.classify("Happy Birthday!")
        second = await classifier.classify("  happy birthday!  ")
        assert model.calls == 1
        assert first == second

    @pytest.mark.asyncio
    async def test_model_input_is_truncated(self):
        classifier, model = with_model([{"label": "SFW", "score": 0.8}])
        await classifier.classify("long message " * 2000)
        assert model.last_kwargs == {"truncation": True}

    def test_model_signals_from_all_labels(self):
        explicit, safe = model_signals(
            [[{"label": "SFW", "score": 0.3}, {"label": "NSFW", "score": 0.7}]]
        )
        assert explicit == pytest.approx(0.7)
        assert safe == pytest.approx(0.3)

    def test_model_signals_single_label(self):
        explicit, safe = model_signals([{"label": "LABEL_0", "score": 0.8}])
        assert safe == pytest.approx(0.8)
        assert explicit == pytest.approx(0.2)


class TestBatch:
    """Tests for batch helpers."""

    @pytest.mark.asyncio
    async def test_classify_batch_keeps_order(self, classifier):
        results = await classifier.classify_batch(["hello", "sex sex", "bye"])
        assert [r.is_explicit for r in results] == [False, True, False]

    @pytest.mark.asyncio
    async def test_filter_messages_drops_explicit(self, classifier):
        kept = await classifier.filter_messages(
            [{"id": 1, "text": "miss you"}, {"id": 2, "text": "wanna fuck? so horny"}]
        )
        assert [m["id"] for m in kept] == [1]
        assert kept[0]["classification"].is_explicit is False
