import json

import pytest

from media_rec.explanations import (
    ExplanationInput,
    build_explanation_prompt,
    fallback_explanation,
    generate_explanations,
    parse_explanations,
)
from media_rec.utils import OracleError

from conftest import FakeOracle


def _rec(item_id="m1", evidence=None, similarity=0.6, novelty=0.4, rating=0.5, genres=("Thriller",)):
    return ExplanationInput(
        item_id=item_id,
        title=f"Title {item_id}",
        year=1999,
        genres=list(genres),
        similarity=similarity,
        novelty=novelty,
        rating_score=rating,
        overview="A heist goes wrong.",
        evidence=evidence or [],
    )


def test_fallback_uses_top_evidence():
    rec = _rec(evidence=[{"title": "Heat", "similarity": 0.91, "evidence_type": "favorite"}])

    text = fallback_explanation(rec)

    assert text == 'Based on your enjoyment of "Heat", this Thriller shares similar qualities you\'ll likely appreciate.'


def test_fallback_joins_reasons():
    rec = _rec(similarity=0.8, novelty=0.6, rating=0.9)

    text = fallback_explanation(rec)

    assert text.startswith("This Thriller strongly matches your viewing history and introduces")
    assert text.endswith("is critically acclaimed.")


def test_fallback_without_reasons_or_genres():
    rec = _rec(similarity=0.3, novelty=0.2, rating=0.2, genres=())

    assert fallback_explanation(rec, "series") == "This series offers something different from your usual picks."


def test_prompt_mentions_evidence_and_genres():
    rec = _rec(evidence=[{"title": "Heat", "similarity": 0.91, "evidence_type": "highly_rated"}])

    prompt = build_explanation_prompt([rec], ["Crime", "Drama"])

    assert '"Heat" (91% match, rewatched)' in prompt
    assert "User top genres: Crime, Drama" in prompt
    assert '"explanations"' in prompt


def test_parse_explanations_handles_fences_and_bad_entries():
    answer = "```json\n" + json.dumps(
        {
            "explanations": [
                {"index": 1, "explanation": " First. "},
                {"index": 5, "explanation": "out of range"},
                {"index": 2, "explanation": ""},
                "junk",
            ]
        }
    ) + "\n```"

    assert parse_explanations(answer, 2) == {1: "First."}
    assert parse_explanations("not json", 2) == {}


@pytest.mark.parametrize(
    "answer",
    ['{"explanations": null}', '{"explanations": 5}', '{"explanations": {"index": 1}}', "{}", "42", "null"],
)
def test_parse_explanations_rejects_non_list_payloads(answer):
    assert parse_explanations(answer, 3) == {}


@pytest.mark.asyncio
async def test_generate_explanations_survives_null_list():
    recs = [_rec("m1"), _rec("m2")]

    result = await generate_explanations(FakeOracle('{"explanations": null}'), recs, ["Thriller"])

    assert result == {r.item_id: fallback_explanation(r) for r in recs}


@pytest.mark.asyncio
async def test_generate_explanations_batches_and_fills_gaps():
    def answer(prompt):
        # answer only the first item of each batch
        return json.dumps({"explanations": [{"index": 1, "explanation": "Oracle text"}]})

    oracle = FakeOracle(answer)
    recs = [_rec(f"m{i}") for i in range(5)]

    result = await generate_explanations(oracle, recs, ["Drama"], batch_size=2)

    assert len(oracle.prompts) == 3
    assert set(result) == {f"m{i}" for i in range(5)}
    assert result["m0"] == "Oracle text"
    assert result["m2"] == "Oracle text"
    assert result["m1"] == fallback_explanation(recs[1])


@pytest.mark.asyncio
async def test_generate_explanations_falls_back_on_oracle_error():
    oracle = FakeOracle(error=OracleError("rate limited"))
    recs = [_rec("a"), _rec("b")]

    result = await generate_explanations(oracle, recs, [])

    assert result == {"a": fallback_explanation(recs[0]), "b": fallback_explanation(recs[1])}


@pytest.mark.asyncio
async def test_generate_explanations_without_oracle():
    recs = [_rec("a")]

    assert await generate_explanations(None, recs, []) == {"a": fallback_explanation(recs[0])}
