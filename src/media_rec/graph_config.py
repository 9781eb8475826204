import math
from dataclasses import dataclass

from .config import (
    GRAPH_DEFAULT_LIMIT,
    GRAPH_DEFAULT_DEPTH,
    GRAPH_MAX_DEPTH,
    BUBBLE_THRESHOLD,
    AI_DIVERSE_SIMILARITY,
    AI_EXCLUDED_TITLES,
    AI_MIN_SUGGESTIONS,
    FUZZY_MATCH_THRESHOLD,
)


def _floor(value: float) -> int:
    # 20 * 0.3 must give 6, not 5
    return math.floor(value + 1e-9)


@dataclass
class GraphConfig:
    """
    Configuration for the multi-depth similarity graph.

    Collection quotas are expressed as bands over the number of library
    items in a collection: small collections are unlimited, medium ones may
    fill ``medium_fraction`` of their size (at least ``medium_min``), large
    ones ``large_fraction`` clamped to [``large_min``, ``large_max``].
    """

    limit: int = GRAPH_DEFAULT_LIMIT
    depth: int = GRAPH_DEFAULT_DEPTH
    max_depth: int = GRAPH_MAX_DEPTH

    # Node caps per requested depth; depth 1 is always limit + 1.
    depth_two_max_nodes: int = 25
    deep_max_nodes: int = 45

    # Neighbour over-fetch per node at levels >= 2
    overfetch_factor: int = 3
    min_level_limit: int = 2

    # Collection quota bands
    small_collection_max: int = 5
    medium_collection_max: int = 15
    medium_fraction: float = 0.5
    medium_min: int = 3
    large_fraction: float = 0.3
    large_min: int = 5
    large_max: int = 8

    # Bubble detection / AI escape
    bubble_threshold: float = BUBBLE_THRESHOLD
    bubble_min_added: int = 2
    ai_escape_enabled: bool = True
    ai_similarity: float = AI_DIVERSE_SIMILARITY
    ai_excluded_titles: int = AI_EXCLUDED_TITLES
    ai_min_suggestions: int = AI_MIN_SUGGESTIONS
    fuzzy_match_threshold: float = FUZZY_MATCH_THRESHOLD

    # Oracle use for collection-chain validation
    use_oracle: bool = True

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.limit <= 0:
            raise ValueError("limit must be positive")
        if self.max_depth <= 0:
            raise ValueError("max_depth must be positive")
        if not (1 <= self.depth <= self.max_depth):
            raise ValueError(f"depth must be in [1, {self.max_depth}]")
        if self.depth_two_max_nodes <= 0 or self.deep_max_nodes <= 0:
            raise ValueError("node caps must be positive")
        if self.overfetch_factor < 1:
            raise ValueError("overfetch_factor must be >= 1")
        if self.min_level_limit < 1:
            raise ValueError("min_level_limit must be >= 1")
        if not (0 < self.small_collection_max < self.medium_collection_max):
            raise ValueError("collection bands must satisfy 0 < small < medium")
        if not (0.0 < self.medium_fraction <= 1.0) or not (0.0 < self.large_fraction <= 1.0):
            raise ValueError("collection fractions must be in (0, 1]")
        if self.large_min > self.large_max:
            raise ValueError("large_min must not exceed large_max")
        if not (0.0 <= self.bubble_threshold <= 1.0):
            raise ValueError("bubble_threshold must be in [0, 1]")
        if not (0.0 <= self.ai_similarity <= 1.0):
            raise ValueError("ai_similarity must be in [0, 1]")
        if not (0.0 < self.fuzzy_match_threshold <= 1.0):
            raise ValueError("fuzzy_match_threshold must be in (0, 1]")

    def max_nodes(self, depth: int | None = None) -> int:
        depth = self.depth if depth is None else depth
        if depth <= 1:
            return self.limit + 1
        if depth == 2:
            return self.depth_two_max_nodes
        return self.deep_max_nodes

    def level_limit(self, level: int) -> int:
        return max(self.min_level_limit, self.limit // level)

    def collection_quota(self, collection_size: int) -> int | None:
        """Maximum graph members from a collection of this size; None means unlimited."""
        if collection_size <= self.small_collection_max:
            return None
        if collection_size <= self.medium_collection_max:
            return max(self.medium_min, _floor(collection_size * self.medium_fraction))
        return min(self.large_max, max(self.large_min, _floor(collection_size * self.large_fraction)))
