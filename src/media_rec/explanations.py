"""
Best-effort natural-language explanations for selected recommendations.

Each batch of recommendations goes to the oracle with the user's top
genres and the per-item evidence (watched titles it is closest to). Any
item the oracle does not answer for, or a whole batch that fails, gets a
deterministic template explanation instead.
"""
import json
import logging
from dataclasses import dataclass, field

from .config import EXPLANATION_BATCH_SIZE
from .oracle import LanguageModelOracle
from .utils import OracleError

logger = logging.getLogger(__name__)

EVIDENCE_LABELS = {
    'favorite': 'favorite',
    'highly_rated': 'rewatched',
    'watched': 'watched',
}


@dataclass
class ExplanationInput:
    item_id: str
    title: str
    year: int | None
    genres: list[str]
    similarity: float
    novelty: float
    rating_score: float
    overview: str | None = None
    # [{'title', 'similarity', 'evidence_type'}], most similar first
    evidence: list[dict] = field(default_factory=list)


def fallback_explanation(rec: ExplanationInput, kind: str = 'movie') -> str:
    noun = rec.genres[0] if rec.genres else kind
    if rec.evidence:
        return (
            f'Based on your enjoyment of "{rec.evidence[0]["title"]}", this {noun} '
            f"shares similar qualities you'll likely appreciate."
        )

    reasons = []
    if rec.similarity > 0.7:
        reasons.append('strongly matches your viewing history')
    elif rec.similarity > 0.5:
        reasons.append('aligns with your taste')
    if rec.novelty > 0.5:
        reasons.append('introduces some fresh genres you might enjoy exploring')
    if rec.rating_score > 0.7:
        reasons.append('is critically acclaimed')

    if not reasons:
        return f'This {noun} offers something different from your usual picks.'
    return f"This {noun} {' and '.join(reasons)}."


def build_explanation_prompt(batch: list[ExplanationInput], top_genres: list[str], kind: str = 'movie') -> str:
    entries = []
    for i, rec in enumerate(batch, start=1):
        if rec.evidence:
            evidence = ', '.join(
                f'"{e["title"]}" ({e["similarity"] * 100:.0f}% match, {EVIDENCE_LABELS.get(e["evidence_type"], "watched")})'
                for e in rec.evidence
            )
        else:
            evidence = 'No direct match data'
        rating = 'critically acclaimed' if rec.rating_score > 0.7 else 'well received' if rec.rating_score > 0.5 else 'mixed'
        entries.append(
            f'{i}. "{rec.title}" ({rec.year or "N/A"})\n'
            f'   Genres: {", ".join(rec.genres) or "unknown"}\n'
            f'   Overall match: {rec.similarity * 100:.0f}% | '
            f'Novelty: {"expands taste" if rec.novelty > 0.5 else "familiar"} | Rating: {rating}\n'
            f'   Similar to what they watched: {evidence}\n'
            f'   Plot: {(rec.overview or "No overview available")[:250]}'
        )

    return (
        f'You are an expert {kind} curator writing personalized recommendation explanations.\n'
        'Write a warm 2-3 sentence explanation for each recommendation below. Reference the specific '
        'watched titles listed for it; do not invent other connections and do not spoil plots.\n\n'
        f'User top genres: {", ".join(top_genres) or "unknown"}\n\n'
        + '\n\n'.join(entries)
        + '\n\nReturn JSON only: {"explanations": [{"index": 1, "explanation": "..."}]}'
    )


def parse_explanations(answer: str, count: int) -> dict[int, str]:
    """1-based index -> explanation text; unparseable answers yield {}."""
    text = (answer or '').strip()
    if text.startswith('```'):
        text = text.strip('`')
        text = text[text.find('\n') + 1:] if '\n' in text else text
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Explanation answer is not valid JSON")
        return {}

    entries = payload.get('explanations') if isinstance(payload, dict) else payload
    if not isinstance(entries, list):
        logger.warning("Explanation answer has no explanations list")
        return {}
    result: dict[int, str] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        index = entry.get('index')
        explanation = entry.get('explanation')
        if isinstance(index, int) and 1 <= index <= count and isinstance(explanation, str) and explanation.strip():
            result[index] = explanation.strip()
    return result


async def generate_explanations(
    oracle: LanguageModelOracle | None,
    recommendations: list[ExplanationInput],
    top_genres: list[str],
    kind: str = 'movie',
    batch_size: int = EXPLANATION_BATCH_SIZE,
) -> dict[str, str]:
    """
    item_id -> explanation for every recommendation.

    Never raises for oracle problems: failed batches fall back to templates.
    """
    results: dict[str, str] = {}
    for start in range(0, len(recommendations), batch_size):
        batch = recommendations[start:start + batch_size]
        answered: dict[int, str] = {}
        if oracle is not None:
            try:
                answer = await oracle.classify(build_explanation_prompt(batch, top_genres, kind))
                answered = parse_explanations(answer, len(batch))
            except OracleError as e:
                logger.error(f"Explanation batch failed, using fallbacks: {e}")
        for i, rec in enumerate(batch, start=1):
            results[rec.item_id] = answered.get(i) or fallback_explanation(rec, kind)
    logger.info(f"Generated {len(results)} explanations")
    return results
