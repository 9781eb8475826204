"""
Recommendation pipeline: watch history to a persisted, ranked run.

    history -> taste profile -> candidates -> scores -> diverse selection
            -> run + candidates + evidence -> (best effort) explanations

Every run row is created in the 'running' state up front and finalized
exactly once: 'completed' (possibly with zero recommendations) or 'failed'
with the error message, in which case the error is re-raised.
"""
import asyncio
import logging
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import numpy as np
from scipy.spatial.distance import cdist

from . import database
from .config import (
    NOVELTY_HISTORY_WINDOW,
    EVIDENCE_PER_ITEM,
    EVIDENCE_VECTOR_LIMIT,
    EXPLANATIONS_ENABLED,
    DEFAULT_MAX_CONCURRENT_USERS,
)
from .explanations import ExplanationInput, fallback_explanation, generate_explanations
from .oracle import LanguageModelOracle
from .pipeline_config import PipelineConfig
from .progress import ProgressReporter
from .retrieval import NeighborIndex, get_candidates
from .scoring import ScoredCandidate, score_candidates
from .selection import SelectionResult, select_diverse
from .taste import WatchHistoryEntry, build_taste_profile
from .utils import MediaRecError, PipelineStopped, check_stop
from .vectors import content_rating_age

logger = logging.getLogger(__name__)

TOP_GENRES_FOR_EXPLANATIONS = 5


def spawn_background(coro: Awaitable, name: str, tasks: set | None = None) -> asyncio.Task:
    """
    Run a best-effort side effect without awaiting it.

    Failures are reported through the logger, never raised to the caller.
    Pass ``tasks`` to keep a strong reference until the task finishes.
    """
    task = asyncio.ensure_future(coro)

    def _done(t: asyncio.Task) -> None:
        if tasks is not None:
            tasks.discard(t)
        if t.cancelled():
            logger.warning(f"Background task '{name}' was cancelled")
        elif t.exception() is not None:
            logger.error(f"Background task '{name}' failed: {t.exception()}")

    if tasks is not None:
        tasks.add(task)
    task.add_done_callback(_done)
    return task


@dataclass
class RunResult:
    run_id: int
    user_id: str
    media_type: str
    status: str = 'completed'
    recommendations: list[ScoredCandidate] = field(default_factory=list)
    candidate_count: int = 0
    duration_ms: int = 0


def evidence_type(entry: WatchHistoryEntry) -> str:
    if entry.is_favorite:
        return 'favorite'
    if entry.play_count > 1:
        return 'highly_rated'
    return 'watched'


def build_evidence(
    selected: list[tuple[str, np.ndarray]],
    history: list[WatchHistoryEntry],
    watched_vectors: dict[str, np.ndarray],
    per_item: int = EVIDENCE_PER_ITEM,
) -> list[dict]:
    """
    For each selected (item_id, vector), the ``per_item`` watched items
    closest to it by cosine similarity.
    """
    entries = [h for h in history if h.item_id in watched_vectors][:EVIDENCE_VECTOR_LIMIT]
    if not entries or not selected:
        return []

    watched_matrix = np.vstack([watched_vectors[h.item_id] for h in entries])
    selected_matrix = np.vstack([vec for _, vec in selected])
    with np.errstate(invalid='ignore', divide='ignore'):
        sims = 1.0 - cdist(selected_matrix, watched_matrix, metric='cosine')
    sims = np.nan_to_num(sims, nan=-1.0)

    evidence = []
    for row, (item_id, _) in enumerate(selected):
        for col in np.argsort(-sims[row], kind='stable')[:per_item]:
            entry = entries[col]
            evidence.append({
                'item_id': item_id,
                'watched_item_id': entry.item_id,
                'similarity': float(np.clip(sims[row, col], -1.0, 1.0)),
                'evidence_type': evidence_type(entry),
            })
    return evidence


def candidate_rows(scored: list[ScoredCandidate], selection: SelectionResult) -> list[dict]:
    """Rows for every scored candidate; selected ones carry their diversity-adjusted scores."""
    selected = {c.item_id: (i, c) for i, c in enumerate(selection.selected, start=1)}
    rows = []
    for i, candidate in enumerate(scored, start=1):
        selected_rank = None
        if candidate.item_id in selected:
            selected_rank, candidate = selected[candidate.item_id]
        rows.append({
            'item_id': candidate.item_id,
            'rank': selection.ranks.get(candidate.item_id, i),
            'is_selected': selected_rank is not None,
            'selected_rank': selected_rank,
            'raw_similarity': candidate.raw_similarity,
            'similarity': candidate.similarity,
            'novelty': candidate.novelty,
            'rating_score': candidate.rating_score,
            'diversity': candidate.diversity,
            'final_score': candidate.final_score,
        })
    return rows


class RecommendationPipeline:
    """
    Generates and persists recommendation runs for one media type.

    Args:
        index: Vector index for this media type (nearest neighbours + vectors)
        oracle: Language-model oracle for explanations; None uses templates
        config: Pipeline settings; defaults to the stored config for movies
        progress: Optional reporter for batch jobs
        explanations_enabled: Generate explanations after a run completes
        background_explanations: Spawn explanations instead of awaiting them
    """

    def __init__(
        self,
        index: NeighborIndex,
        oracle: LanguageModelOracle | None = None,
        config: PipelineConfig | None = None,
        progress: ProgressReporter | None = None,
        explanations_enabled: bool = EXPLANATIONS_ENABLED,
        background_explanations: bool = False,
    ):
        self.index = index
        self.oracle = oracle
        self.config = config or PipelineConfig.from_stored('movie')
        self.progress = progress
        self.explanations_enabled = explanations_enabled
        self.background_explanations = background_explanations
        self._locks: dict[str, asyncio.Lock] = {}
        self._background: set[asyncio.Task] = set()

    @property
    def media_type(self) -> str:
        return self.config.media_type

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        if user_id not in self._locks:
            self._locks[user_id] = asyncio.Lock()
        return self._locks[user_id]

    async def wait_for_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Single user -------------------------------------------------------

    async def generate_for_user(
        self,
        user_id: str,
        should_stop: Callable[[], bool] | None = None,
        include_watched: bool | None = None,
    ) -> RunResult:
        """
        Generate and persist one run for ``user_id``.

        ``include_watched`` overrides the user's stored preference; when
        set, already watched items may be recommended again.
        """
        async with self._lock_for(user_id):
            return await self._generate(user_id, should_stop, include_watched)

    async def clear_user(self, user_id: str) -> int:
        async with self._lock_for(user_id):
            return await self._clear(user_id)

    async def regenerate_user(
        self,
        user_id: str,
        should_stop: Callable[[], bool] | None = None,
        include_watched: bool | None = None,
    ) -> RunResult:
        """Clear the user's stored runs for this media type and generate a fresh one."""
        async with self._lock_for(user_id):
            await self._clear(user_id)
            return await self._generate(user_id, should_stop, include_watched)

    async def _clear(self, user_id: str) -> int:
        cleared = await asyncio.to_thread(database.clear_user_recommendations, user_id, self.media_type)
        logger.info(f"Cleared {cleared} {self.media_type} runs for {user_id}")
        return cleared

    async def _generate(
        self,
        user_id: str,
        should_stop: Callable[[], bool] | None,
        include_watched: bool | None = None,
    ) -> RunResult:
        cfg = self.config
        started = time.monotonic()
        run_id = await asyncio.to_thread(database.create_run, user_id, cfg.media_type)
        logger.info(f"Run {run_id}: generating {cfg.media_type} recommendations for {user_id}")

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        async def complete_empty(reason: str) -> RunResult:
            logger.warning(f"Run {run_id}: {reason}, no recommendations for {user_id}")
            await asyncio.to_thread(database.finalize_run, run_id, 'completed', 0, 0, elapsed_ms())
            return RunResult(run_id, user_id, cfg.media_type, duration_ms=elapsed_ms())

        try:
            check_stop(should_stop, "history load")
            user = await asyncio.to_thread(database.load_user, user_id)
            rows = await asyncio.to_thread(database.load_watch_history, user_id, cfg.media_type, cfg.recent_watch_limit)
            ratings = await asyncio.to_thread(database.load_user_ratings, user_id)
            history = [WatchHistoryEntry.from_row(r, ratings.get(r['item_id'])) for r in rows]
            logger.info(f"Run {run_id}: {len(history)} watched items, {len(ratings)} ratings")
            if not history:
                return await complete_empty("empty watch history")

            vectors = {}
            for entry in history:
                vec = await self.index.get_vector(entry.item_id)
                if vec is None:
                    logger.debug(f"Watched item {entry.item_id} has no embedding, skipping")
                    continue
                vectors[entry.item_id] = vec
            profile = build_taste_profile(history, vectors)
            if profile is None:
                return await complete_empty("no watched item has an embedding")
            await asyncio.to_thread(
                database.save_taste_profile, user_id, cfg.media_type, profile.vector, profile.source_count,
            )

            check_stop(should_stop, "candidate retrieval")
            prefs = await asyncio.to_thread(database.load_user_preferences, user_id)
            if include_watched is None:
                include_watched = prefs['include_watched']
            exclude_ids = await asyncio.to_thread(
                database.load_exclusion_ids, user_id,
                include_watched, prefs['dislike_behavior'] == 'exclude',
            )
            logger.info(
                f"Run {run_id}: excluding {len(exclude_ids)} items "
                f"(include_watched={include_watched}, dislike_behavior={prefs['dislike_behavior']})"
            )
            max_rating = content_rating_age(user.get('max_content_rating')) if user else None
            candidates = await get_candidates(
                self.index, profile.vector, exclude_ids, cfg.max_candidates, max_rating=max_rating,
            )
            logger.info(f"Run {run_id}: {len(candidates)} candidates")
            if not candidates:
                return await complete_empty("no eligible candidates")

            check_stop(should_stop, "scoring")
            scored = score_candidates(
                candidates, [h.genres for h in history[:NOVELTY_HISTORY_WINDOW]], cfg.weights,
            )
            selection = select_diverse(
                scored, cfg.selected_count, weights=cfg.weights,
                use_network_diversity=cfg.use_network_diversity,
            )
            for i, s in enumerate(selection.selected[:10], start=1):
                logger.debug(f"  {i}. {s.title} ({s.year}) - Score: {s.final_score:.3f}")

            selected_vectors = []
            for s in selection.selected:
                vec = await self.index.get_vector(s.item_id)
                if vec is not None:
                    selected_vectors.append((s.item_id, vec))
            evidence = build_evidence(selected_vectors, history, vectors)

            await asyncio.to_thread(database.save_run_results, run_id, candidate_rows(scored, selection), evidence)
            duration = elapsed_ms()
            await asyncio.to_thread(
                database.finalize_run, run_id, 'completed', len(scored), len(selection.selected), duration,
            )
        except (Exception, asyncio.CancelledError) as e:
            logger.error(f"Run {run_id} for {user_id} failed: {e}")
            try:
                await asyncio.to_thread(
                    database.finalize_run, run_id, 'failed', 0, 0, elapsed_ms(), str(e) or type(e).__name__,
                )
            except MediaRecError as finalize_error:
                logger.error(f"Could not mark run {run_id} as failed: {finalize_error}")
            raise

        logger.info(
            f"Run {run_id}: {len(selection.selected)} picks from {len(scored)} candidates in {duration}ms"
        )

        if self.explanations_enabled and selection.selected:
            explain = self._explain(run_id, selection.selected, history, evidence)
            if self.background_explanations:
                spawn_background(explain, f"explanations-{run_id}", self._background)
            else:
                await explain

        return RunResult(
            run_id, user_id, cfg.media_type,
            recommendations=list(selection.selected),
            candidate_count=len(scored),
            duration_ms=duration,
        )

    async def _explain(
        self,
        run_id: int,
        selected: list[ScoredCandidate],
        history: list[WatchHistoryEntry],
        evidence: list[dict],
    ) -> None:
        try:
            ids = [s.item_id for s in selected] + [e['watched_item_id'] for e in evidence]
            items = await asyncio.to_thread(database.load_items, ids)

            by_item: dict[str, list[dict]] = {}
            for e in evidence:
                watched = items.get(e['watched_item_id'])
                if watched is None:
                    continue
                by_item.setdefault(e['item_id'], []).append({
                    'title': watched['title'],
                    'similarity': e['similarity'],
                    'evidence_type': e['evidence_type'],
                })

            inputs = [
                ExplanationInput(
                    item_id=s.item_id,
                    title=s.title,
                    year=s.year,
                    genres=list(s.genres),
                    similarity=s.similarity,
                    novelty=s.novelty,
                    rating_score=s.rating_score,
                    overview=(items.get(s.item_id) or {}).get('overview'),
                    evidence=by_item.get(s.item_id, []),
                )
                for s in selected
            ]
            genre_counts = Counter(g for h in history for g in h.genres)
            top_genres = [g for g, _ in genre_counts.most_common(TOP_GENRES_FOR_EXPLANATIONS)]

            try:
                explanations = await generate_explanations(self.oracle, inputs, top_genres, kind=self.media_type)
            except Exception as e:
                logger.error(f"Run {run_id}: explanation generation crashed, using templates: {e}")
                explanations = {rec.item_id: fallback_explanation(rec, self.media_type) for rec in inputs}
            await asyncio.to_thread(database.save_explanations, run_id, explanations)
        except MediaRecError as e:
            logger.warning(f"Run {run_id}: explanations failed, continuing without: {e}")
        except Exception as e:
            logger.error(f"Run {run_id}: unexpected explanation failure, continuing without: {e}")

    # Batches -----------------------------------------------------------

    async def _generate_batch(
        self,
        job_id: str,
        user_ids: list[str],
        should_stop: Callable[[], bool] | None,
        parallel: int,
    ) -> dict:
        counts = {'success': 0, 'failed': 0, 'total_recommendations': 0}
        done = 0
        semaphore = asyncio.Semaphore(max(1, parallel))

        async def run_one(user_id: str) -> None:
            nonlocal done
            async with semaphore:
                check_stop(should_stop, "batch generation")
                try:
                    result = await self.generate_for_user(user_id, should_stop)
                    counts['success'] += 1
                    counts['total_recommendations'] += len(result.recommendations)
                    if self.progress:
                        self.progress.log(job_id, 'info', f"{user_id}: {len(result.recommendations)} recommendations")
                except PipelineStopped:
                    raise
                except Exception as e:
                    counts['failed'] += 1
                    logger.error(f"Recommendation generation failed for {user_id}: {e}")
                    if self.progress:
                        self.progress.log(job_id, 'error', f"{user_id}: {e}")
                done += 1
                if self.progress:
                    self.progress.update(job_id, done, len(user_ids), user_id)

        tasks = [asyncio.ensure_future(run_one(user_id)) for user_id in user_ids]
        try:
            await asyncio.gather(*tasks)
        except (Exception, asyncio.CancelledError):
            # A stop (or outer cancel) ends the batch; settle every sibling first.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return counts

    async def generate_for_all_users(
        self,
        should_stop: Callable[[], bool] | None = None,
        parallel: int = DEFAULT_MAX_CONCURRENT_USERS,
    ) -> dict:
        """
        Generate a run for every user. One user's failure never stops the batch.

        Returns:
            {'success', 'failed', 'total_recommendations', 'job_id'}
        """
        job_id = f"recs-{self.media_type}-{uuid.uuid4().hex[:8]}"
        if self.progress:
            self.progress.start(job_id, f"generate-{self.media_type}-recommendations", 2)
            self.progress.set_step(job_id, 0, 'Finding users')
        try:
            user_ids = await asyncio.to_thread(database.list_user_ids)
            if self.progress:
                self.progress.set_step(job_id, 1, 'Generating recommendations', len(user_ids))
            counts = await self._generate_batch(job_id, user_ids, should_stop, parallel)
        except (Exception, asyncio.CancelledError) as e:
            if self.progress:
                self.progress.fail(job_id, str(e) or type(e).__name__)
            raise

        result = {**counts, 'job_id': job_id}
        logger.info(
            f"Batch {job_id}: {counts['success']} succeeded, {counts['failed']} failed, "
            f"{counts['total_recommendations']} recommendations"
        )
        if self.progress:
            self.progress.complete(job_id, result)
        return result

    async def clear_and_rebuild_all(
        self,
        should_stop: Callable[[], bool] | None = None,
        parallel: int = DEFAULT_MAX_CONCURRENT_USERS,
    ) -> dict:
        """Wipe every user's runs for this media type, then regenerate them all."""
        job_id = f"rebuild-{self.media_type}-{uuid.uuid4().hex[:8]}"
        if self.progress:
            self.progress.start(job_id, f"rebuild-{self.media_type}-recommendations", 3)
            self.progress.set_step(job_id, 0, 'Counting users')
        try:
            user_ids = await asyncio.to_thread(database.list_user_ids)

            if self.progress:
                self.progress.set_step(job_id, 1, 'Clearing recommendations', len(user_ids))
            cleared = 0
            for i, user_id in enumerate(user_ids, start=1):
                check_stop(should_stop, "clearing")
                cleared += await self.clear_user(user_id)
                if self.progress:
                    self.progress.update(job_id, i, len(user_ids), user_id)

            if self.progress:
                self.progress.set_step(job_id, 2, 'Regenerating recommendations', len(user_ids))
            counts = await self._generate_batch(job_id, user_ids, should_stop, parallel)
        except (Exception, asyncio.CancelledError) as e:
            if self.progress:
                self.progress.fail(job_id, str(e) or type(e).__name__)
            raise

        result = {**counts, 'cleared_runs': cleared, 'job_id': job_id}
        logger.info(f"Rebuild {job_id}: cleared {cleared} runs, {counts['success']} users regenerated")
        if self.progress:
            self.progress.complete(job_id, result)
        return result
