"""
Embedding generation for library items.

Items are rendered to a canonical text (identity, classification, creative
people, overview) and embedded in batches with the OpenAI embeddings API.
"""
import asyncio
import logging
import uuid
from typing import Callable, Protocol

import openai
from openai import AsyncOpenAI

from . import database
from .config import (
    OPENAI_API_KEY,
    EMBED_MODEL,
    EMBED_BATCH_SIZE,
    ORACLE_TIMEOUT,
    MAX_ORACLE_RETRIES,
    ORACLE_RETRY_DELAY,
)
from .oracle import translate_openai_error
from .progress import ProgressReporter
from .similarity import parse_people
from .utils import OracleError, QuotaExceededError, check_stop, async_retry_with_backoff

logger = logging.getLogger(__name__)

MAX_OVERVIEW_CHARS = 1000


class Embedder(Protocol):
    model: str

    async def embed(self, texts: list[str]) -> list[list[float]]: ...


def canonical_text(item: dict) -> str:
    """Text an item is embedded from; deterministic for a given item row."""
    sections = [f"{item['title']} ({item['year']})" if item.get('year') else item['title']]

    if item.get('genres'):
        sections.append(f"Genres: {', '.join(item['genres'])}")
    if item.get('content_rating'):
        sections.append(f"Rated {item['content_rating']}")
    if item.get('directors'):
        sections.append(f"Directed by {', '.join(item['directors'])}")

    studios = [p.name for p in parse_people(item.get('studios'))][:2]
    if studios:
        sections.append(f"Studio: {', '.join(studios)}")
    if item.get('network'):
        sections.append(f"Network: {item['network']}")

    actors = [p.name for p in parse_people(item.get('actors'))][:3]
    if actors:
        sections.append(f"Starring {', '.join(actors)}")

    overview = item.get('overview')
    if overview:
        if len(overview) > MAX_OVERVIEW_CHARS:
            overview = overview[:MAX_OVERVIEW_CHARS] + '...'
        sections.append(overview)

    if item.get('keywords'):
        sections.append(f"Themes: {', '.join(item['keywords'])}")
    return '. '.join(sections)


class OpenAIEmbedder:
    """Batch text embedder backed by the OpenAI embeddings endpoint."""

    def __init__(
        self,
        model: str = EMBED_MODEL,
        api_key: str | None = OPENAI_API_KEY,
        timeout: float | None = ORACLE_TIMEOUT,
        client: AsyncOpenAI | None = None,
    ) -> None:
        if client is None:
            client_kwargs: dict = {"timeout": timeout, "max_retries": 0}
            if api_key is not None:
                client_kwargs["api_key"] = api_key
            client = AsyncOpenAI(**client_kwargs)
        self._client = client
        self.model = model

    @async_retry_with_backoff(max_retries=MAX_ORACLE_RETRIES, initial_delay=ORACLE_RETRY_DELAY)
    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            resp = await self._client.embeddings.create(model=self.model, input=texts)
        except openai.OpenAIError as e:
            raise translate_openai_error(e) from e

        data = sorted(resp.data, key=lambda d: d.index)
        if len(data) != len(texts):
            raise OracleError(f"Expected {len(texts)} embeddings, got {len(data)}")
        return [list(d.embedding) for d in data]

    async def close(self) -> None:
        await self._client.close()


async def generate_missing_embeddings(
    embedder: Embedder,
    batch_size: int = EMBED_BATCH_SIZE,
    limit: int | None = None,
    progress: ProgressReporter | None = None,
    should_stop: Callable[[], bool] | None = None,
    on_batch: Callable[[int], None] | None = None,
) -> dict:
    """
    Embed every item that has no stored vector yet.

    A failed batch is counted and skipped. Quota exhaustion stops the job
    but keeps everything saved so far.

    Returns:
        {'generated': int, 'failed': int, 'quota_exceeded': bool}
    """
    job_id = f"embed-{uuid.uuid4().hex[:8]}"
    if progress:
        progress.start(job_id, 'generate-embeddings', 2)
        progress.set_step(job_id, 0, 'Finding items without embeddings')

    items = await asyncio.to_thread(database.load_items_missing_embeddings, limit)
    result = {'generated': 0, 'failed': 0, 'quota_exceeded': False}
    if not items:
        logger.info("All items already have embeddings")
        if progress:
            progress.complete(job_id, result)
        return result

    logger.info(f"Embedding {len(items)} items with {embedder.model}")
    if progress:
        progress.set_step(job_id, 1, 'Generating embeddings', len(items))

    for start in range(0, len(items), batch_size):
        check_stop(should_stop, "embedding generation")
        batch = items[start:start + batch_size]
        try:
            vectors = await embedder.embed([canonical_text(item) for item in batch])
            await asyncio.to_thread(
                database.save_embeddings,
                {item['id']: vec for item, vec in zip(batch, vectors)},
                embedder.model,
            )
            result['generated'] += len(batch)
        except QuotaExceededError as e:
            logger.error(f"Embedding quota exceeded, stopping: {e}")
            result['failed'] += len(items) - start
            result['quota_exceeded'] = True
            break
        except OracleError as e:
            logger.error(f"Embedding batch at {start} failed: {e}")
            result['failed'] += len(batch)

        if progress:
            progress.update(job_id, result['generated'] + result['failed'], len(items), batch[-1]['title'])
        if on_batch:
            on_batch(len(batch))

    logger.info(f"Embedding generation done: {result['generated']} generated, {result['failed']} failed")
    if progress:
        progress.complete(job_id, result)
    return result
