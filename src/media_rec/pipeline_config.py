import logging
from dataclasses import dataclass, field, fields, asdict
from typing import Any

from . import database
from .config import (
    MEDIA_TYPES,
    DEFAULT_MAX_CANDIDATES,
    DEFAULT_SELECTED_COUNT,
    DEFAULT_RECENT_WATCH_LIMIT,
    DEFAULT_WEIGHTS,
)
from .utils import StoreError

logger = logging.getLogger(__name__)

WEIGHT_KEYS = ('similarity', 'novelty', 'rating', 'diversity')


@dataclass
class PipelineConfig:
    """
    Per-media-type settings for one recommendation run.

    Weights are used as given; they are not renormalized, so a config whose
    weights sum to more than 1 simply produces larger final scores.
    """

    media_type: str = 'movie'
    max_candidates: int = DEFAULT_MAX_CANDIDATES
    selected_count: int = DEFAULT_SELECTED_COUNT['movie']
    recent_watch_limit: int = DEFAULT_RECENT_WATCH_LIMIT['movie']
    weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.media_type not in MEDIA_TYPES:
            raise ValueError(f"media_type must be one of {MEDIA_TYPES}")
        if self.max_candidates <= 0:
            raise ValueError("max_candidates must be positive")
        if self.selected_count < 0:
            raise ValueError("selected_count must be non-negative")
        if self.recent_watch_limit <= 0:
            raise ValueError("recent_watch_limit must be positive")
        if not isinstance(self.weights, dict):
            raise ValueError("weights must be a dict")
        missing = [k for k in WEIGHT_KEYS if k not in self.weights]
        if missing:
            raise ValueError(f"weights missing keys: {', '.join(missing)}")
        if any(self.weights[k] < 0 for k in WEIGHT_KEYS):
            raise ValueError("weights must be non-negative")
        if sum(self.weights[k] for k in WEIGHT_KEYS) <= 0:
            raise ValueError("weights must contain at least one positive weight")

    @property
    def use_network_diversity(self) -> bool:
        return self.media_type == 'series'

    @classmethod
    def for_media_type(cls, media_type: str = 'movie') -> "PipelineConfig":
        if media_type not in MEDIA_TYPES:
            raise ValueError(f"media_type must be one of {MEDIA_TYPES}")
        return cls(
            media_type=media_type,
            selected_count=DEFAULT_SELECTED_COUNT[media_type],
            recent_watch_limit=DEFAULT_RECENT_WATCH_LIMIT[media_type],
        )

    @classmethod
    def from_overrides(cls, media_type: str = 'movie', overrides: dict[str, Any] | None = None) -> "PipelineConfig":
        """Defaults for ``media_type`` with known keys replaced; unknown keys are ignored."""
        config = asdict(cls.for_media_type(media_type))
        known = {f.name for f in fields(cls)} - {'media_type'}
        for key, value in (overrides or {}).items():
            if key not in known:
                logger.warning(f"Ignoring unknown pipeline config key '{key}'")
                continue
            if key == 'weights':
                config['weights'] = {**config['weights'], **{k: float(v) for k, v in value.items()}}
            else:
                config[key] = int(value)
        return cls(**config)

    @classmethod
    def from_stored(cls, media_type: str = 'movie') -> "PipelineConfig":
        """
        Config stored in the database for ``media_type``, falling back to
        defaults when nothing is stored, the store is unreachable or the
        stored values do not validate.
        """
        try:
            stored = database.load_recommendation_config(media_type)
        except StoreError as e:
            logger.warning(f"Could not load stored {media_type} config, using defaults: {e}")
            return cls.for_media_type(media_type)
        if not stored:
            return cls.for_media_type(media_type)
        try:
            return cls.from_overrides(media_type, stored)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Stored {media_type} config is invalid, using defaults: {e}")
            return cls.for_media_type(media_type)

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload.pop('media_type')
        return payload
