import pytest

from chatguard.moderation.domain.classifier import MessageClassifier
from chatguard.moderation.domain.lexicon import InMemoryLexiconRepository, LexiconCategory, LexiconStore
from chatguard.moderation.domain.matcher import FuzzyMatcher, MatchPolicy
from chatguard.moderation.domain.variants import variants_of


async def _store(words: dict[LexiconCategory, list[str]]) -> LexiconStore:
    repo = InMemoryLexiconRepository({category: {"words": items} for category, items in words.items()})
    store = LexiconStore(repo, live_updates=False, defaults={})
    await store.start()
    return store


@pytest.mark.asyncio
async def test_leet_variant_flags_bully_category() -> None:
    store = await _store({LexiconCategory.BULLY: ["stupid"]})
    verdict = MessageClassifier(store).classify("You're s7upid!!")

    assert verdict.has_bully_words is True
    assert verdict.has_sexual_harassment_words is False
    assert verdict.has_bad_words is False
    assert verdict.words_for(LexiconCategory.BULLY) == ("s7upid",)
    assert verdict.categories() == (LexiconCategory.BULLY,)


@pytest.mark.asyncio
@pytest.mark.parametrize("word", ["stupid", "loser", "fat", "idiot"])
async def test_every_generated_variant_is_flagged(word: str) -> None:
    store = await _store({LexiconCategory.BULLY: [word]})
    classifier = MessageClassifier(store)

    for variant in variants_of(word):
        assert classifier.classify(f"hey {variant} there").has_bully_words, variant


@pytest.mark.asyncio
async def test_empty_lexicon_flags_nothing() -> None:
    store = await _store({})
    verdict = MessageClassifier(store).classify("you stupid loser")

    assert not verdict.has_violation()
    assert verdict.labelled_words() == {"bully": [], "sexual_harassment": [], "bad": []}


@pytest.mark.asyncio
async def test_word_in_several_categories_flags_each() -> None:
    store = await _store(
        {
            LexiconCategory.SEXUAL_HARASSMENT: ["inappropriate"],
            LexiconCategory.BAD: ["inappropriate"],
        }
    )
    verdict = MessageClassifier(store).classify("that is inappropriate")

    assert verdict.has_sexual_harassment_words and verdict.has_bad_words
    assert not verdict.has_bully_words


@pytest.mark.asyncio
async def test_classify_handles_empty_and_none() -> None:
    store = await _store({LexiconCategory.BULLY: ["stupid"]})
    classifier = MessageClassifier(store)

    assert not classifier.classify("").has_violation()
    assert not classifier.classify(None).has_violation()


@pytest.mark.asyncio
async def test_loose_policy_catches_near_misses() -> None:
    store = await _store({LexiconCategory.BULLY: ["stupid"]})
    strict = MessageClassifier(store)
    loose = MessageClassifier(store, FuzzyMatcher(MatchPolicy.loose()))

    assert not strict.classify("so stupit").has_violation()
    assert loose.classify("so stupit").has_bully_words


@pytest.mark.asyncio
async def test_unexpected_matcher_error_reads_as_clean() -> None:
    class BrokenMatcher(FuzzyMatcher):
        def find_matches(self, normalized_text, lexicon):
            raise RuntimeError("boom")

    store = await _store({LexiconCategory.BULLY: ["stupid"]})
    verdict = MessageClassifier(store, BrokenMatcher()).classify("stupid")

    assert not verdict.has_violation()
