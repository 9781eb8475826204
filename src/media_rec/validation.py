"""
Connection validation for similarity-graph edges.

Filters run in a fixed order and stop at the first rejection:

1. title pattern  - both titles share a sequel-ish pattern around unrelated cores
2. genre gate     - no genre in common
3. collection chain - both items belong to different, unrelated collections;
   resolved through the validation cache, then the language-model oracle

Cache entries are keyed by the sorted id pair, so (A, B) and (B, A) share
one verdict.
"""
import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from . import database
from .oracle import LanguageModelOracle
from .similarity import SimilarityItem
from .utils import OracleError, StoreError

logger = logging.getLogger(__name__)

TITLE_PATTERNS = [
    re.compile(r'^return of ', re.IGNORECASE),
    re.compile(r'^the return of ', re.IGNORECASE),
    re.compile(r' returns?$', re.IGNORECASE),
    re.compile(r'^revenge of ', re.IGNORECASE),
    re.compile(r'^rise of ', re.IGNORECASE),
    re.compile(r'^attack of ', re.IGNORECASE),
    re.compile(r'^battle of ', re.IGNORECASE),
    re.compile(r'^escape from ', re.IGNORECASE),
    re.compile(r'^journey to ', re.IGNORECASE),
    re.compile(r' ii$', re.IGNORECASE),
    re.compile(r' iii$', re.IGNORECASE),
    re.compile(r' 2$'),
    re.compile(r' 3$'),
]

# Franchise alias groups: two collections mentioning aliases from the same
# group belong to one shared universe.
FRANCHISE_GROUPS = [
    ('star wars', 'lego star wars', 'ewok'),
    ('star trek',),
    ('marvel', 'avengers', 'iron man', 'captain america', 'thor', 'spider-man', 'x-men'),
    ('dc', 'batman', 'superman', 'justice league', 'wonder woman'),
    ('lord of the rings', 'hobbit', 'middle-earth'),
    ('harry potter', 'fantastic beasts', 'wizarding world'),
    ('disney princess', 'frozen', 'tangled', 'moana'),
    ('pixar', 'toy story', 'cars', 'finding nemo', 'incredibles'),
]

_COLLECTION_SUFFIX = re.compile(r'\s*collection$', re.IGNORECASE)
_VERDICT_PREFIX = re.compile(r'^(YES|NO)\s*[-–—:.,]?\s*', re.IGNORECASE)


def pair_key(id_a: str, id_b: str) -> str:
    """Canonical unordered key for a pair of item ids."""
    first, second = sorted((id_a, id_b))
    return f"{first}|{second}"


@dataclass
class ConnectionValidation:
    is_valid: bool
    reason: str
    from_cache: bool = False


class ValidationCache(Protocol):
    async def get(self, id_a: str, id_b: str) -> ConnectionValidation | None: ...

    async def put(self, source: SimilarityItem, target: SimilarityItem, is_valid: bool, reason: str) -> None: ...

    def stats(self) -> dict: ...


class SQLiteValidationCache:
    """Verdicts persisted in the ``similarity_validation_cache`` table."""

    async def get(self, id_a: str, id_b: str) -> ConnectionValidation | None:
        entry = await asyncio.to_thread(database.get_validation, pair_key(id_a, id_b))
        if entry is None:
            return None
        return ConnectionValidation(entry['is_valid'], entry['reason'] or 'Cached result', from_cache=True)

    async def put(self, source: SimilarityItem, target: SimilarityItem, is_valid: bool, reason: str) -> None:
        await asyncio.to_thread(
            database.put_validation, pair_key(source.id, target.id), source.type, target.type, is_valid, reason,
        )

    def stats(self) -> dict:
        return database.validation_cache_stats()


class InMemoryValidationCache:
    """Process-local cache; handy for one-off graph builds and tests."""

    def __init__(self):
        self._entries: dict[str, dict] = {}

    async def get(self, id_a: str, id_b: str) -> ConnectionValidation | None:
        entry = self._entries.get(pair_key(id_a, id_b))
        if entry is None:
            return None
        return ConnectionValidation(entry['is_valid'], entry['reason'], from_cache=True)

    async def put(self, source: SimilarityItem, target: SimilarityItem, is_valid: bool, reason: str) -> None:
        self._entries[pair_key(source.id, target.id)] = {
            'is_valid': is_valid,
            'reason': reason,
            'source_type': source.type,
            'target_type': target.type,
            'created_at': datetime.now().isoformat(),
        }

    def stats(self) -> dict:
        valid = sum(1 for e in self._entries.values() if e['is_valid'])
        return {'total': len(self._entries), 'valid': valid, 'invalid': len(self._entries) - valid}


def detect_title_pattern_match(title_a: str, title_b: str) -> str | None:
    """Rejection reason if both titles share a pattern around unrelated cores."""
    for pattern in TITLE_PATTERNS:
        match_a = pattern.search(title_a)
        match_b = pattern.search(title_b)
        if not (match_a and match_b):
            continue
        core_a = pattern.sub('', title_a, count=1).strip().lower()
        core_b = pattern.sub('', title_b, count=1).strip().lower()
        if core_a != core_b and core_a not in core_b and core_b not in core_a:
            return f'Similar title pattern "{match_a.group(0).strip()}" but unrelated content'
    return None


def shared_genres(genres_a: list[str], genres_b: list[str]) -> list[str]:
    lowered = {g.lower() for g in genres_a}
    return [g for g in genres_b if g.lower() in lowered]


def _franchise(collection: str) -> str:
    return _COLLECTION_SUFFIX.sub('', collection.lower()).strip()


def _mentions(franchise: str, alias: str) -> bool:
    return re.search(rf'(?<![\w-]){re.escape(alias)}(?![\w-])', franchise) is not None


def collections_related(collection_a: str, collection_b: str) -> bool:
    """Same collection, same franchise, one containing the other, or a shared alias group."""
    a = collection_a.lower().strip()
    b = collection_b.lower().strip()
    if a == b:
        return True

    franchise_a = _franchise(a)
    franchise_b = _franchise(b)
    if franchise_a == franchise_b:
        return True
    if franchise_a and franchise_b and (franchise_a in franchise_b or franchise_b in franchise_a):
        return True

    for group in FRANCHISE_GROUPS:
        if any(_mentions(franchise_a, alias) for alias in group) and any(_mentions(franchise_b, alias) for alias in group):
            return True
    return False


def build_validation_prompt(source: SimilarityItem, target: SimilarityItem) -> str:
    def describe(label: str, item: SimilarityItem) -> str:
        return (
            f'{label}: "{item.title}" ({item.year or "unknown"})\n'
            f'- Genres: {", ".join(item.genres) or "unknown"}\n'
            f'- Collection: {item.collection_name or "none"}'
        )

    return (
        "Are these two titles thematically related enough to recommend together?\n\n"
        f"{describe('Title 1', source)}\n\n{describe('Title 2', target)}\n\n"
        'Answer with ONLY "YES" or "NO" followed by a brief reason (max 10 words).\n'
        'Example: "YES - both epic space adventures" or "NO - completely different genres and themes"'
    )


def parse_verdict(answer: str) -> tuple[bool, str] | None:
    """(is_valid, reason) from a YES/NO answer; None when the answer is malformed."""
    text = (answer or '').strip().strip('"').strip()
    upper = text.upper()
    if upper.startswith('YES'):
        is_valid = True
    elif upper.startswith('NO'):
        is_valid = False
    else:
        return None
    reason = _VERDICT_PREFIX.sub('', text).strip() or ('AI approved' if is_valid else 'AI rejected')
    return is_valid, reason


class ConnectionValidator:
    """
    Decide whether an edge between two items is legitimate.

    Args:
        oracle: Language-model oracle consulted for unrelated collections
        cache: Verdict cache; consulted before every oracle call
        use_oracle: When False, unrelated collection chains are rejected outright
    """

    def __init__(self, oracle: LanguageModelOracle | None, cache: ValidationCache, use_oracle: bool = True):
        self.oracle = oracle
        self.cache = cache
        self.use_oracle = use_oracle and oracle is not None
        self.oracle_calls = 0

    async def validate(self, source: SimilarityItem, target: SimilarityItem) -> ConnectionValidation:
        title_issue = detect_title_pattern_match(source.title, target.title)
        if title_issue:
            logger.debug(f"Rejected {source.title!r} -> {target.title!r}: {title_issue}")
            return ConnectionValidation(False, title_issue)

        if not shared_genres(source.genres, target.genres):
            logger.debug(f"Rejected {source.title!r} -> {target.title!r}: no shared genres")
            return ConnectionValidation(False, 'No shared genres')

        if (
            source.collection_name
            and target.collection_name
            and not collections_related(source.collection_name, target.collection_name)
        ):
            return await self._validate_collection_chain(source, target)

        return ConnectionValidation(True, 'Passed all filters')

    async def _validate_collection_chain(self, source: SimilarityItem, target: SimilarityItem) -> ConnectionValidation:
        cached = await self.cache.get(source.id, target.id)
        if cached is not None:
            return cached

        if not self.use_oracle:
            return ConnectionValidation(False, 'Unrelated collection chain')

        self.oracle_calls += 1
        try:
            answer = await self.oracle.classify(build_validation_prompt(source, target))
        except OracleError as e:
            logger.error(f"Oracle validation failed for {source.title!r} -> {target.title!r}, rejecting: {e}")
            return ConnectionValidation(False, 'AI validation error')

        verdict = parse_verdict(answer)
        if verdict is None:
            logger.warning(f"Malformed validation answer {answer[:60]!r}, rejecting")
            return ConnectionValidation(False, 'AI validation returned no verdict')

        is_valid, reason = verdict
        logger.info(f"Oracle validated {source.title!r} -> {target.title!r}: {is_valid} ({reason})")
        try:
            await self.cache.put(source, target, is_valid, reason)
        except StoreError as e:
            logger.error(f"Failed to cache validation for {source.id}/{target.id}: {e}")
        return ConnectionValidation(is_valid, reason)
