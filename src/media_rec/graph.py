"""
Multi-depth similarity graph around a seed item.

Level 1 holds the seed's direct neighbours. Deeper levels expand each new
node, subject to per-collection quotas and connection validation, so a
large franchise cannot swallow the whole graph. When a level leaves the
graph dominated by one collection and adds almost nothing new, the builder
asks the language-model oracle for thematically similar titles from other
franchises and links any library matches straight to the seed.
"""
import asyncio
import logging
import re
from collections import Counter
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Callable

from . import database
from .graph_config import GraphConfig
from .oracle import LanguageModelOracle
from .retrieval import NeighborIndex
from .similarity import (
    GraphData,
    GraphEdge,
    GraphNode,
    SimilarityItem,
    ai_diverse_reason,
    compute_connection_reasons,
)
from .utils import ItemNotFoundError, MediaRecError, OracleError, check_stop
from .validation import ConnectionValidator

logger = logging.getLogger(__name__)

_NUMBERED_LINE = re.compile(r'^\d+\.')
_BULLET = re.compile(r'^[-•*]\s*')


class CollectionSizeService:
    """
    Library member counts per collection name, cached for the service's lifetime.

    Args:
        loader: Callable returning the member count for a collection name
    """

    def __init__(self, loader: Callable[[str], int] | None = None):
        self._loader = loader
        self._sizes: dict[str, int] = {}

    async def size(self, collection_name: str) -> int:
        if collection_name not in self._sizes:
            loader = self._loader or database.count_collection_members
            self._sizes[collection_name] = max(await asyncio.to_thread(loader, collection_name), 1)
        return self._sizes[collection_name]

    def clear(self) -> None:
        self._sizes.clear()


@dataclass
class BubbleAnalysis:
    is_bubbled: bool
    dominant_collection: str | None
    collection_percentage: float
    unique_collections: int


def analyze_bubble(items: list[SimilarityItem], threshold: float) -> BubbleAnalysis:
    """Share of ``items`` belonging to the single most common collection."""
    if not items:
        return BubbleAnalysis(False, None, 0.0, 0)
    counts = Counter(item.collection_name for item in items if item.collection_name)
    if not counts:
        return BubbleAnalysis(False, None, 0.0, 0)
    dominant, top = counts.most_common(1)[0]
    share = top / len(items)
    return BubbleAnalysis(share >= threshold, dominant, share, len(counts))


def parse_suggested_titles(text: str) -> list[str]:
    """One title per line; numbered lines are dropped, bullets stripped."""
    titles = []
    for line in (text or '').splitlines():
        line = line.strip()
        if not line or _NUMBERED_LINE.match(line):
            continue
        title = _BULLET.sub('', line).strip().strip('"')
        if 1 < len(title) < 100:
            titles.append(title)
    return titles


def match_titles_to_library(titles: list[str], library: list[dict], threshold: float) -> list[str]:
    """
    Resolve suggested titles to library ids.

    Exact (case-insensitive) title matches win; otherwise the closest title
    by ``SequenceMatcher`` ratio is taken if it reaches ``threshold``.
    """
    by_title: dict[str, str] = {}
    for row in library:
        by_title.setdefault(row['title'].lower(), row['id'])

    matched: list[str] = []
    for title in titles:
        wanted = title.lower()
        item_id = by_title.get(wanted)
        if item_id is None:
            best_ratio = 0.0
            for row in library:
                ratio = SequenceMatcher(None, wanted, row['title'].lower()).ratio()
                if ratio > best_ratio:
                    best_ratio, item_id = ratio, row['id']
            if best_ratio < threshold:
                item_id = None
        if item_id is not None and item_id not in matched:
            matched.append(item_id)
    return matched


def build_diverse_prompt(seed: SimilarityItem, existing: list[SimilarityItem], count: int, max_titles: int) -> str:
    exclude_titles = [item.title for item in existing][:max_titles]
    exclude_collections = sorted({item.collection_name for item in existing if item.collection_name})
    kind = 'series' if seed.type == 'series' else 'movie'

    lines = [
        f'Given the {kind} "{seed.title}" ({seed.year or "unknown year"}), which has these characteristics:',
        f'- Genres: {", ".join(seed.genres) or "unknown"}',
        f'- Keywords: {", ".join(seed.keywords[:5]) or "unknown"}',
    ]
    if seed.collection_name:
        lines.append(f'- Part of: {seed.collection_name}')
    lines += [
        '',
        f'Suggest {count} thematically similar titles that would appeal to fans but are from '
        'DIFFERENT franchises/collections.',
        '',
        'EXCLUDE these titles and their franchises:',
        ', '.join(exclude_titles),
    ]
    if exclude_collections:
        lines += ['', f'ALSO EXCLUDE anything from: {", ".join(exclude_collections)}']
    lines += [
        '',
        'Return ONLY the titles, one per line, without numbers or explanations.',
        'Focus on well-known, popular titles that are likely to be in a home media library.',
    ]
    return '\n'.join(lines)


class _GraphState:
    """Mutable bookkeeping for one build."""

    def __init__(self, seed: SimilarityItem):
        self.seed = seed
        self.nodes: dict[str, GraphNode] = {}
        self.items: dict[str, SimilarityItem] = {}
        self.edges: list[GraphEdge] = []
        self.edge_keys: set[tuple[str, str]] = set()
        self.collection_counts: Counter = Counter()

    def add_node(self, item: SimilarityItem, is_center: bool = False) -> None:
        self.nodes[item.id] = GraphNode(item.id, item.title, item.year, item.type, is_center)
        self.items[item.id] = item
        if not is_center and item.collection_name:
            self.collection_counts[item.collection_name] += 1

    def add_edge(self, source: str, target: str, similarity: float, reasons) -> bool:
        key = tuple(sorted((source, target)))
        if key in self.edge_keys:
            return False
        self.edge_keys.add(key)
        self.edges.append(GraphEdge(source, target, similarity, list(reasons)))
        return True

    def non_seed_items(self) -> list[SimilarityItem]:
        return [item for item_id, item in self.items.items() if item_id != self.seed.id]

    def to_graph(self) -> GraphData:
        return GraphData(nodes=list(self.nodes.values()), edges=list(self.edges))


class SimilarityGraphBuilder:
    """
    Build similarity graphs from the vector index and library metadata.

    Args:
        index: Vector index (nearest_neighbors / get_vector)
        validator: Connection validator for level >= 2 edges
        oracle: Oracle for bubble-escape suggestions; None disables escape
        collection_sizes: Shared collection-size service
        config: Graph tuning
        item_loader: ids -> {id: item row}; defaults to the library store
        title_loader: media type -> [{id, title, ...}] for fuzzy matching
    """

    def __init__(
        self,
        index: NeighborIndex,
        validator: ConnectionValidator,
        oracle: LanguageModelOracle | None = None,
        collection_sizes: CollectionSizeService | None = None,
        config: GraphConfig | None = None,
        item_loader: Callable[[list[str]], dict[str, dict]] | None = None,
        title_loader: Callable[[str | None], list[dict]] | None = None,
    ):
        self.index = index
        self.validator = validator
        self.oracle = oracle
        self.collection_sizes = collection_sizes or CollectionSizeService()
        self.config = config or GraphConfig()
        self._item_loader = item_loader
        self._title_loader = title_loader

    async def _load_items(self, ids: list[str]) -> dict[str, SimilarityItem]:
        loader = self._item_loader or database.load_items
        rows = await asyncio.to_thread(loader, ids)
        return {item_id: SimilarityItem.from_row(row) for item_id, row in rows.items()}

    async def _neighbors(self, item: SimilarityItem, limit: int, exclude: set[str]) -> list[tuple[SimilarityItem, float]]:
        vector = await self.index.get_vector(item.id)
        if vector is None:
            logger.debug(f"No embedding for {item.id} ({item.title}), no neighbours")
            return []
        hits = await self.index.nearest_neighbors(vector, exclude_ids=exclude | {item.id}, limit=limit)
        items = await self._load_items([item_id for item_id, _ in hits])
        return [(items[item_id], sim) for item_id, sim in hits if item_id in items]

    async def _within_quota(self, item: SimilarityItem, state: _GraphState, full_franchise_mode: bool) -> bool:
        if full_franchise_mode or not item.collection_name:
            return True
        quota = self.config.collection_quota(await self.collection_sizes.size(item.collection_name))
        return quota is None or state.collection_counts[item.collection_name] < quota

    async def build(
        self,
        item_id: str,
        limit: int | None = None,
        depth: int | None = None,
        full_franchise_mode: bool = False,
        hide_watched_ids: set[str] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> GraphData:
        """
        Build the graph around ``item_id``.

        Args:
            item_id: Seed item; always present with ``is_center=True``
            limit: Level-1 neighbour count (defaults to config)
            depth: Levels to expand, 1..max_depth (defaults to config)
            full_franchise_mode: Disable collection quotas
            hide_watched_ids: Non-seed ids to leave out of the graph
            should_stop: Cooperative abort check between nodes and levels

        Raises:
            ItemNotFoundError: Seed item is not in the library
        """
        limit = self.config.limit if limit is None else limit
        depth = self.config.depth if depth is None else depth
        if limit <= 0:
            raise ValueError("limit must be positive")
        if not (1 <= depth <= self.config.max_depth):
            raise ValueError(f"depth must be in [1, {self.config.max_depth}]")
        hidden = set(hide_watched_ids or ()) - {item_id}
        max_nodes = self.config.max_nodes(depth) if depth > 1 else limit + 1

        seeds = await self._load_items([item_id])
        if item_id not in seeds:
            raise ItemNotFoundError(f"Item not found: {item_id}")
        seed = seeds[item_id]
        state = _GraphState(seed)
        state.add_node(seed, is_center=True)

        # Level 1: direct neighbours, no quota, no validation
        current_level: list[str] = []
        for item, sim in await self._neighbors(seed, limit, exclude=set(hidden)):
            if item.id in state.nodes or item.id in hidden:
                continue
            state.add_node(item)
            state.add_edge(seed.id, item.id, sim, compute_connection_reasons(seed, item))
            current_level.append(item.id)

        processed = {seed.id}
        for level in range(2, depth + 1):
            check_stop(should_stop, f"graph level {level}")
            if len(state.nodes) >= max_nodes:
                logger.info(f"Stopping expansion at level {level}: {len(state.nodes)} nodes (cap {max_nodes})")
                break

            level_limit = self.config.level_limit(level)
            next_level: list[str] = []
            added_at_level = 0

            for node_id in current_level:
                if len(state.nodes) >= max_nodes:
                    break
                if node_id in processed:
                    continue
                processed.add(node_id)
                check_stop(should_stop, f"graph level {level}")

                source = state.items[node_id]
                try:
                    neighbours = await self._neighbors(
                        source, level_limit * self.config.overfetch_factor, exclude=set(state.nodes) | hidden,
                    )
                except (MediaRecError, ValueError) as e:
                    logger.warning(f"Skipping expansion of {source.title!r}: {e}")
                    continue

                added_for_node = 0
                for item, sim in neighbours:
                    if len(state.nodes) >= max_nodes or added_for_node >= level_limit:
                        break
                    if item.id == seed.id or item.id in state.nodes or item.id in hidden:
                        continue
                    try:
                        if not await self._within_quota(item, state, full_franchise_mode):
                            logger.debug(f"Skipping {item.title!r}: collection {item.collection_name!r} at quota")
                            continue
                        validation = await self.validator.validate(source, item)
                    except MediaRecError as e:
                        logger.warning(f"Skipping edge {source.title!r} -> {item.title!r}: {e}")
                        continue
                    if not validation.is_valid:
                        logger.debug(f"Rejected {source.title!r} -> {item.title!r}: {validation.reason}")
                        continue

                    state.add_node(item)
                    state.add_edge(source.id, item.id, sim, compute_connection_reasons(source, item))
                    added_for_node += 1
                    added_at_level += 1
                    next_level.append(item.id)

            bubble = analyze_bubble(state.non_seed_items(), self.config.bubble_threshold)
            if bubble.is_bubbled and added_at_level < self.config.bubble_min_added:
                logger.info(
                    f"Bubble at level {level}: {bubble.dominant_collection!r} holds "
                    f"{bubble.collection_percentage:.0%} of the graph, {added_at_level} added"
                )
                next_level += await self._escape_bubble(
                    state, limit, added_at_level, max_nodes, hidden, full_franchise_mode,
                )

            current_level = next_level

        logger.debug(f"Graph for {seed.title!r}: {len(state.nodes)} nodes, {len(state.edges)} edges")
        return state.to_graph()

    async def _escape_bubble(
        self,
        state: _GraphState,
        limit: int,
        added_at_level: int,
        max_nodes: int,
        hidden: set[str],
        full_franchise_mode: bool,
    ) -> list[str]:
        """Link oracle-suggested titles from other franchises to the seed."""
        if not self.config.ai_escape_enabled or self.oracle is None:
            return []
        seed = state.seed
        count = max(self.config.ai_min_suggestions, limit - added_at_level)
        prompt = build_diverse_prompt(seed, state.non_seed_items(), count, self.config.ai_excluded_titles)
        try:
            answer = await self.oracle.classify(prompt)
        except OracleError as e:
            logger.error(f"AI escape failed, continuing without suggestions: {e}")
            return []

        titles = parse_suggested_titles(answer)
        if not titles:
            logger.info("AI escape returned no usable titles")
            return []

        title_loader = self._title_loader or database.load_item_titles
        library = await asyncio.to_thread(title_loader, seed.type)
        matched_ids = match_titles_to_library(titles, library, self.config.fuzzy_match_threshold)
        candidates = await self._load_items([i for i in matched_ids if i not in state.nodes and i not in hidden])

        added: list[str] = []
        reason = ai_diverse_reason(seed.title)
        for item_id in matched_ids:
            item = candidates.get(item_id)
            if item is None or item_id in state.nodes:
                continue
            if len(state.nodes) >= max_nodes:
                break
            if not await self._within_quota(item, state, full_franchise_mode):
                continue
            state.add_node(item)
            state.add_edge(seed.id, item.id, self.config.ai_similarity, [reason])
            added.append(item.id)

        logger.info(f"AI escape: {len(titles)} suggested, {len(matched_ids)} matched, {len(added)} added")
        return added

    async def build_for_user(
        self,
        item_id: str,
        user_id: str,
        limit: int | None = None,
        depth: int | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> GraphData:
        """Build with the user's stored similarity preferences applied."""
        prefs = await asyncio.to_thread(database.load_user_preferences, user_id)
        hidden: set[str] = set()
        if prefs['hide_watched']:
            hidden = await asyncio.to_thread(database.load_watched_ids, user_id)
        logger.debug(
            f"Graph preferences for {user_id}: full_franchise={prefs['full_franchise_mode']}, "
            f"hide_watched={prefs['hide_watched']} ({len(hidden)} watched)"
        )
        return await self.build(
            item_id,
            limit=limit,
            depth=depth,
            full_franchise_mode=prefs['full_franchise_mode'],
            hide_watched_ids=hidden,
            should_stop=should_stop,
        )
