import argparse
import asyncio
import atexit
import json
import logging
import re

import httpx
from tqdm import tqdm

from .database import (
    init_db, close_pool, load_latest_run, load_run_recommendations, load_item,
)
from .config import (
    MEDIA_TYPES,
    OPENAI_API_KEY,
    EMBED_BATCH_SIZE,
    GRAPH_DEFAULT_LIMIT,
    GRAPH_DEFAULT_DEPTH,
    GRAPH_MAX_DEPTH,
    DEFAULT_MAX_CONCURRENT_USERS,
    NOTIFICATION_WEBHOOK_URL,
)
from .embeddings import OpenAIEmbedder, generate_missing_embeddings
from .graph import SimilarityGraphBuilder
from .graph_config import GraphConfig
from .oracle import OpenAIOracle
from .pipeline import RecommendationPipeline
from .pipeline_config import PipelineConfig
from .progress import JobProgress, JobState
from .utils import MediaRecError, ItemNotFoundError, retry_with_backoff
from .validation import ConnectionValidator, SQLiteValidationCache
from .vectors import VectorStore

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)


@retry_with_backoff(max_retries=2, initial_delay=1.0, exceptions=(httpx.HTTPError,))
def _post_webhook(url: str, payload: dict) -> None:
    resp = httpx.post(url, json=payload, timeout=10)
    resp.raise_for_status()


def send_notification(message: str) -> None:
    """Send a notification to a configured webhook (Discord/Slack-style)."""
    if not NOTIFICATION_WEBHOOK_URL:
        return
    try:
        _post_webhook(NOTIFICATION_WEBHOOK_URL, {"content": message})
    except httpx.HTTPError as exc:
        logger.warning(f"Failed to send notification: {exc}")


def _validate_id(value: str, kind: str = "id") -> str:
    """
    Validate a user or item id from the command line.
    Raises ValueError if it is empty or contains unexpected characters.
    """
    cleaned = value.strip()
    if not cleaned or not re.match(r'^[\w.:-]+$', cleaned):
        raise ValueError(f"Invalid {kind}: {value!r}")
    return cleaned


class _ProgressBar:
    """Mirror JobProgress updates onto one tqdm bar per job step."""

    def __init__(self):
        self._bar = None
        self._step = None

    def __call__(self, job: JobState) -> None:
        if job.status != 'running':
            self.close()
            return
        step = (job.job_id, job.step)
        if step != self._step:
            self.close()
            self._step = step
            self._bar = tqdm(total=job.total or None, desc=job.step_name, unit="item")
        if self._bar is not None:
            if job.total and self._bar.total != job.total:
                self._bar.total = job.total
            self._bar.n = job.current
            self._bar.refresh()

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None
        self._step = None


def _make_oracle() -> OpenAIOracle | None:
    if not OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY is not set; oracle features fall back to offline behaviour")
        return None
    return OpenAIOracle()


def _make_pipeline(media_type: str, oracle, progress=None, explain: bool = True) -> RecommendationPipeline:
    index = VectorStore.from_database(media_type)
    return RecommendationPipeline(
        index,
        oracle=oracle,
        config=PipelineConfig.from_stored(media_type),
        progress=progress,
        explanations_enabled=explain,
    )


async def _close_oracle(oracle) -> None:
    if oracle is not None:
        await oracle.close()


def _log_recommendations(recs: list[dict]) -> None:
    for rec in recs:
        rank = rec.get('selected_rank') or rec['rank']
        logger.info(f"{rank}. {rec['title']} ({rec['year'] or 'N/A'}) - Score: {rec['final_score']:.3f}")
        logger.info(
            f"   similarity {rec['similarity']:.2f} | novelty {rec['novelty']:.2f} | "
            f"rating {rec['rating_score']:.2f} | diversity {rec['diversity']:.2f}"
        )
        if rec.get('explanation'):
            logger.info(f"   Why: {rec['explanation']}")


async def _cmd_recommend_async(args: argparse.Namespace, user_id: str) -> int:
    oracle = _make_oracle()
    try:
        pipeline = _make_pipeline(args.type, oracle, explain=not args.no_explain)
        if getattr(args, 'regenerate', False):
            result = await pipeline.regenerate_user(user_id)
        else:
            result = await pipeline.generate_for_user(user_id)
        return result.run_id
    finally:
        await _close_oracle(oracle)


def cmd_init_db(args: argparse.Namespace) -> None:
    """Create the database schema."""
    init_db()
    logger.info("Database initialized")


def cmd_recommend(args: argparse.Namespace) -> None:
    """Generate recommendations for one user."""
    user_id = _validate_id(args.user_id, "user id")
    init_db()

    run_id = asyncio.run(_cmd_recommend_async(args, user_id))
    recs = load_run_recommendations(run_id)
    if not recs:
        logger.info(f"No {args.type} recommendations for '{user_id}' (run {run_id})")
        return

    logger.info(f"\nTop {args.type} picks for {user_id} (run {run_id}):")
    _log_recommendations(recs[:args.limit] if args.limit else recs)


def cmd_regenerate(args: argparse.Namespace) -> None:
    """Clear a user's stored runs and generate a fresh one."""
    args.regenerate = True
    cmd_recommend(args)


async def _cmd_batch_async(args: argparse.Namespace, rebuild: bool) -> dict:
    oracle = _make_oracle()
    bar = _ProgressBar()
    try:
        pipeline = _make_pipeline(args.type, oracle, progress=JobProgress(on_update=bar), explain=not args.no_explain)
        if rebuild:
            return await pipeline.clear_and_rebuild_all(parallel=args.parallel)
        return await pipeline.generate_for_all_users(parallel=args.parallel)
    finally:
        bar.close()
        await _close_oracle(oracle)


def cmd_recommend_all(args: argparse.Namespace) -> None:
    """Generate recommendations for every user."""
    init_db()
    result = asyncio.run(_cmd_batch_async(args, rebuild=False))
    message = (
        f"{args.type} recommendations: {result['success']} users succeeded, {result['failed']} failed, "
        f"{result['total_recommendations']} recommendations"
    )
    logger.info(message)
    send_notification(message)


def cmd_rebuild_all(args: argparse.Namespace) -> None:
    """Clear every user's runs and regenerate them."""
    init_db()
    result = asyncio.run(_cmd_batch_async(args, rebuild=True))
    message = (
        f"{args.type} rebuild: cleared {result['cleared_runs']} runs, "
        f"{result['success']} users regenerated, {result['failed']} failed"
    )
    logger.info(message)
    send_notification(message)


def cmd_show_run(args: argparse.Namespace) -> None:
    """Show the latest completed run for a user."""
    user_id = _validate_id(args.user_id, "user id")
    init_db()

    run = load_latest_run(user_id, args.type)
    if not run:
        logger.error(f"No completed {args.type} run for '{user_id}'. Run: media-rec recommend {user_id}")
        return

    logger.info(
        f"\nRun {run['id']} ({run['status']}): {run['selected_count']} selected from "
        f"{run['candidate_count']} candidates in {run['duration_ms']}ms"
    )
    recs = load_run_recommendations(run['id'], selected_only=not args.all)
    _log_recommendations(recs)
    if args.evidence:
        for rec in recs:
            for e in rec['evidence']:
                watched = load_item(e['watched_item_id'])
                title = watched['title'] if watched else e['watched_item_id']
                logger.info(f"   {rec['title']} <- {title} ({e['similarity']:.2f}, {e['evidence_type']})")


async def _cmd_similar_async(args: argparse.Namespace, item_id: str):
    oracle = _make_oracle()
    try:
        config = GraphConfig(limit=args.limit, depth=args.depth, use_oracle=oracle is not None)
        seed = load_item(item_id)
        index = VectorStore.from_database(seed['type'] if seed else None)
        validator = ConnectionValidator(oracle, SQLiteValidationCache(), use_oracle=config.use_oracle)
        builder = SimilarityGraphBuilder(index, validator, oracle=oracle, config=config)
        if args.user:
            graph = await builder.build_for_user(item_id, _validate_id(args.user, "user id"))
        else:
            graph = await builder.build(item_id)
        return graph, validator.oracle_calls
    finally:
        await _close_oracle(oracle)


def cmd_similar(args: argparse.Namespace) -> None:
    """Build the similarity graph around an item."""
    item_id = _validate_id(args.item_id, "item id")
    init_db()

    try:
        graph, oracle_calls = asyncio.run(_cmd_similar_async(args, item_id))
    except ItemNotFoundError:
        logger.error(f"No item found with id '{item_id}'")
        return

    if args.json:
        print(json.dumps(graph.to_dict(), indent=2))
        return

    titles = {node.id: f"{node.title} ({node.year or 'N/A'})" for node in graph.nodes}
    center = next(node for node in graph.nodes if node.is_center)
    logger.info(f"\nSimilarity graph for {titles[center.id]}: {len(graph.nodes)} nodes, {len(graph.edges)} edges")
    for edge in graph.edges:
        reasons = ', '.join(
            r.value or ', '.join(r.values or []) or r.type for r in edge.reasons
        ) or 'similar'
        logger.info(f"  {titles[edge.source]} -> {titles[edge.target]} [{edge.primary_type}] {edge.similarity:.2f}")
        logger.info(f"     Why: {reasons}")
    logger.debug(f"Oracle validations: {oracle_calls}")


def cmd_embed(args: argparse.Namespace) -> None:
    """Generate embeddings for items that have none."""
    init_db()
    if not OPENAI_API_KEY:
        logger.error("OPENAI_API_KEY is not configured; cannot generate embeddings")
        return

    async def _run():
        embedder = OpenAIEmbedder()
        bar = _ProgressBar()
        try:
            return await generate_missing_embeddings(
                embedder, batch_size=args.batch, limit=args.limit, progress=JobProgress(on_update=bar),
            )
        finally:
            bar.close()
            await embedder.close()

    result = asyncio.run(_run())
    message = f"Embeddings: {result['generated']} generated, {result['failed']} failed"
    if result['quota_exceeded']:
        message += " (stopped: API quota exceeded)"
    logger.info(message)
    send_notification(message)


def cmd_cache_stats(args: argparse.Namespace) -> None:
    """Show connection-validation cache statistics."""
    init_db()
    stats = SQLiteValidationCache().stats()
    logger.info("\nValidation cache:")
    logger.info(f"  Total verdicts: {stats['total']}")
    logger.info(f"  Valid: {stats['valid']}")
    logger.info(f"  Invalid: {stats['invalid']}")


def _add_type_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--type", choices=MEDIA_TYPES, default="movie", help="Media type")


def main():
    parser = argparse.ArgumentParser(description="Media Library Recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create the database schema")
    init_parser.set_defaults(func=cmd_init_db)

    # Recommendation commands
    rec_parser = subparsers.add_parser("recommend", help="Generate recommendations for a user")
    rec_parser.add_argument("user_id", help="User id")
    _add_type_arg(rec_parser)
    rec_parser.add_argument("--limit", type=int, default=20, help="Number of picks to display (0 = all)")
    rec_parser.add_argument("--no-explain", action="store_true", help="Skip explanation generation")
    rec_parser.set_defaults(func=cmd_recommend)

    regen_parser = subparsers.add_parser("regenerate", help="Clear and regenerate a user's recommendations")
    regen_parser.add_argument("user_id", help="User id")
    _add_type_arg(regen_parser)
    regen_parser.add_argument("--limit", type=int, default=20, help="Number of picks to display (0 = all)")
    regen_parser.add_argument("--no-explain", action="store_true", help="Skip explanation generation")
    regen_parser.set_defaults(func=cmd_regenerate)

    all_parser = subparsers.add_parser("recommend-all", help="Generate recommendations for every user")
    _add_type_arg(all_parser)
    all_parser.add_argument("--parallel", type=int, default=DEFAULT_MAX_CONCURRENT_USERS,
                            help="Users processed concurrently")
    all_parser.add_argument("--no-explain", action="store_true", help="Skip explanation generation")
    all_parser.set_defaults(func=cmd_recommend_all)

    rebuild_parser = subparsers.add_parser("rebuild-all", help="Clear and regenerate every user's recommendations")
    _add_type_arg(rebuild_parser)
    rebuild_parser.add_argument("--parallel", type=int, default=DEFAULT_MAX_CONCURRENT_USERS,
                                help="Users processed concurrently")
    rebuild_parser.add_argument("--no-explain", action="store_true", help="Skip explanation generation")
    rebuild_parser.set_defaults(func=cmd_rebuild_all)

    show_parser = subparsers.add_parser("show-run", help="Show a user's latest completed run")
    show_parser.add_argument("user_id", help="User id")
    _add_type_arg(show_parser)
    show_parser.add_argument("--all", action="store_true", help="Include stored unselected candidates")
    show_parser.add_argument("--evidence", action="store_true", help="Show supporting watched items")
    show_parser.set_defaults(func=cmd_show_run)

    # Similarity graph
    similar_parser = subparsers.add_parser("similar", help="Build the similarity graph around an item")
    similar_parser.add_argument("item_id", help="Seed item id")
    similar_parser.add_argument("--depth", type=int, default=GRAPH_DEFAULT_DEPTH,
                                choices=range(1, GRAPH_MAX_DEPTH + 1), help="Levels to expand")
    similar_parser.add_argument("--limit", type=int, default=GRAPH_DEFAULT_LIMIT, help="Direct neighbours")
    similar_parser.add_argument("--user", help="Apply this user's graph preferences")
    similar_parser.add_argument("--json", action="store_true", help="Print the graph as JSON")
    similar_parser.set_defaults(func=cmd_similar)

    # Maintenance
    embed_parser = subparsers.add_parser("embed", help="Generate missing item embeddings")
    embed_parser.add_argument("--batch", type=int, default=EMBED_BATCH_SIZE, help="Items per API call")
    embed_parser.add_argument("--limit", type=int, help="Maximum items to embed")
    embed_parser.set_defaults(func=cmd_embed)

    stats_parser = subparsers.add_parser("cache-stats", help="Show validation cache statistics")
    stats_parser.set_defaults(func=cmd_cache_stats)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args.func(args)
    except ValueError as e:
        parser.error(str(e))
    except MediaRecError as e:
        logger.error(f"{args.command} failed: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
