"""Backfill of embeddings for open issues that were stored without one."""
import logging
from dataclasses import dataclass

import httpx

from src.core.errors import EmbeddingProviderError
from src.core.hashing import build_embedding_text, embedding_input_hash
from src.core.vector import to_vector_literal
from src.ingestion.embeddings import Embedder
from src.services.types import IssueStoreProtocol


logger = logging.getLogger(__name__)


@dataclass
class EmbedBackfillResult:
    embedded: int
    failed: int
    batches: int


async def embed_pending_issues(
    store: IssueStoreProtocol,
    embedder: Embedder,
    repo_full_name: str,
    limit: int = 200,
    max_batches: int | None = None,
) -> EmbedBackfillResult:
    """
    Embeds pending issues in batches of `limit`, oldest update first.
    Failed issues stay pending; a batch in which nothing succeeded ends the run.
    """
    embedded = 0
    failed = 0
    batches = 0

    while max_batches is None or batches < max_batches:
        pending = await store.list_issues_pending_embedding(repo_full_name, limit)
        if not pending:
            break
        batches += 1

        progress = 0
        for issue in pending:
            try:
                result = await embedder.embed(build_embedding_text(issue.title, issue.body))
                await store.save_embedding(
                    repo_full_name,
                    issue.issue_number,
                    to_vector_literal(result.embedding),
                    result.model,
                    embedding_input_hash(issue.title, issue.body),
                )
                progress += 1
            except (EmbeddingProviderError, httpx.HTTPError, OSError) as e:
                failed += 1
                logger.warning(
                    "Embedding failed; leaving as pending",
                    extra={"repo": repo_full_name, "issue_number": issue.issue_number, "error": str(e)},
                )

        embedded += progress
        logger.info(
            "Embedded batch",
            extra={"repo": repo_full_name, "batch": batches, "embedded": progress, "pending": len(pending)},
        )
        if progress == 0:
            break

    return EmbedBackfillResult(embedded=embedded, failed=failed, batches=batches)
