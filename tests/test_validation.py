import pytest

from media_rec.similarity import SimilarityItem
from media_rec.utils import OracleError
from media_rec.validation import (
    ConnectionValidator,
    InMemoryValidationCache,
    SQLiteValidationCache,
    collections_related,
    detect_title_pattern_match,
    pair_key,
    parse_verdict,
)

from conftest import FakeOracle


def _item(item_id, title, genres=("Action",), collection=None):
    return SimilarityItem(id=item_id, title=title, year=1990, genres=list(genres), collection_name=collection)


def test_pair_key_is_symmetric():
    assert pair_key("b", "a") == pair_key("a", "b") == "a|b"


def test_title_pattern_rejects_unrelated_cores():
    assert detect_title_pattern_match("Rocky 2", "Toy Story 2") is not None
    assert detect_title_pattern_match("Return of the Jedi", "Return of the Living Dead") is not None
    assert detect_title_pattern_match("Rocky 2", "Rocky") is None
    assert detect_title_pattern_match("Heat", "Ronin") is None


@pytest.mark.parametrize(
    "a, b, related",
    [
        ("Star Wars Collection", "star wars collection", True),
        ("Star Wars Collection", "LEGO Star Wars Collection", True),
        ("Iron Man Collection", "The Avengers Collection", True),
        ("The Hobbit Collection", "The Lord of the Rings Collection", True),
        ("Batman Collection", "Madcap Collection", False),
        ("Rocky Collection", "Alien Collection", False),
    ],
)
def test_collections_related(a, b, related):
    assert collections_related(a, b) is related


@pytest.mark.parametrize(
    "answer, expected",
    [
        ("YES - both heist films", (True, "both heist films")),
        ('"no: different tone"', (False, "different tone")),
        ("YES", (True, "AI approved")),
        ("NO", (False, "AI rejected")),
        ("Maybe, hard to say", None),
        ("", None),
    ],
)
def test_parse_verdict(answer, expected):
    assert parse_verdict(answer) == expected


@pytest.mark.asyncio
async def test_filters_run_in_order():
    oracle = FakeOracle()
    validator = ConnectionValidator(oracle, InMemoryValidationCache())

    # title pattern wins over the genre gate
    result = await validator.validate(
        _item("a", "Rocky 2", genres=["Drama"]), _item("b", "Toy Story 2", genres=["Animation"])
    )
    assert not result.is_valid
    assert "title pattern" in result.reason

    # genre gate wins over the collection chain
    result = await validator.validate(
        _item("a", "Heat", genres=["Crime"], collection="Rocky Collection"),
        _item("b", "Alien", genres=["Horror"], collection="Alien Collection"),
    )
    assert result.reason == "No shared genres"
    assert oracle.prompts == []


@pytest.mark.asyncio
async def test_related_collections_pass_without_oracle():
    oracle = FakeOracle()
    validator = ConnectionValidator(oracle, InMemoryValidationCache())

    result = await validator.validate(
        _item("a", "Iron Man", collection="Iron Man Collection"),
        _item("b", "The Avengers", collection="The Avengers Collection"),
    )

    assert result.is_valid
    assert oracle.prompts == []


@pytest.mark.asyncio
async def test_oracle_verdict_is_cached_for_both_directions():
    oracle = FakeOracle("YES - both eighties action")
    cache = InMemoryValidationCache()
    validator = ConnectionValidator(oracle, cache)
    rambo = _item("a", "Rambo", collection="Rambo Collection")
    commando = _item("b", "Die Hard", collection="Die Hard Collection")

    first = await validator.validate(rambo, commando)
    second = await validator.validate(commando, rambo)

    assert first.is_valid and not first.from_cache
    assert first.reason == "both eighties action"
    assert second.is_valid and second.from_cache
    assert len(oracle.prompts) == 1
    assert validator.oracle_calls == 1
    assert cache.stats() == {"total": 1, "valid": 1, "invalid": 0}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "oracle",
    [FakeOracle("I am not sure"), FakeOracle(error=OracleError("boom"))],
    ids=["malformed", "error"],
)
async def test_bad_oracle_answers_reject_and_are_not_cached(oracle):
    cache = InMemoryValidationCache()
    validator = ConnectionValidator(oracle, cache)
    a = _item("a", "Rambo", collection="Rambo Collection")
    b = _item("b", "Die Hard", collection="Die Hard Collection")

    result = await validator.validate(a, b)
    await validator.validate(a, b)

    assert not result.is_valid
    assert cache.stats()["total"] == 0
    assert len(oracle.prompts) == 2


@pytest.mark.asyncio
async def test_without_oracle_unrelated_chains_are_rejected():
    validator = ConnectionValidator(None, InMemoryValidationCache())

    result = await validator.validate(
        _item("a", "Rambo", collection="Rambo Collection"),
        _item("b", "Die Hard", collection="Die Hard Collection"),
    )

    assert not result.is_valid
    assert validator.oracle_calls == 0


@pytest.mark.asyncio
async def test_sqlite_cache_round_trip(fresh_db):
    fresh_db.init_db()
    cache = SQLiteValidationCache()
    a = _item("a", "Rambo")
    b = SimilarityItem(id="b", title="Dexter", type="series", genres=["Crime"])

    assert await cache.get("a", "b") is None
    await cache.put(a, b, False, "different formats")
    await cache.put(b, a, True, "both about killers")

    entry = await cache.get("b", "a")
    assert entry.is_valid
    assert entry.from_cache
    assert entry.reason == "both about killers"
    assert cache.stats() == {"total": 1, "valid": 1, "invalid": 0}
