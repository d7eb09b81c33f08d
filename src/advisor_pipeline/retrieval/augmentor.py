"""Top-K retrieval with score filtering and prompt-context rendering."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import structlog

from advisor_pipeline.config import RetrievalConfig
from advisor_pipeline.errors import RetrievalError, StageTimeoutError
from advisor_pipeline.retrieval.vector_index import VectorIndex
from advisor_pipeline.types import RetrievedDocument

logger = structlog.get_logger(__name__)

CONTEXT_DELIMITER = "---------------------"
CONTEXT_TEMPLATE = f"""Context information is below.
{CONTEXT_DELIMITER}
{{context}}
{CONTEXT_DELIMITER}
Answer using the context above. If it does not contain the answer, say that you do not know."""


class RetrievalAugmentor:
    """Queries the vector index and enforces the top-K/threshold contract.

    The index is not trusted to honour ``top_k`` or the threshold, so both are
    re-applied here before documents reach the prompt.
    """

    def __init__(
        self,
        index: VectorIndex,
        config: RetrievalConfig | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self.index = index
        self.config = config or RetrievalConfig()
        self.timeout_seconds = timeout_seconds

    async def retrieve(self, query: str) -> list[RetrievedDocument]:
        try:
            hits = await asyncio.wait_for(
                self.index.search(query, self.config.top_k, self.config.similarity_threshold),
                self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise StageTimeoutError("retrieval", self.timeout_seconds or 0.0) from exc
        except RetrievalError:
            raise
        except Exception as exc:
            raise RetrievalError(f"vector index unavailable: {exc}") from exc

        selected = select_documents(hits, self.config.top_k, self.config.similarity_threshold)
        logger.debug(
            "retrieval.selected",
            returned=len(hits),
            selected=len(selected),
            top_score=selected[0].score if selected else None,
        )
        return selected


def select_documents(
    documents: Iterable[RetrievedDocument], top_k: int, similarity_threshold: float
) -> list[RetrievedDocument]:
    eligible = [doc for doc in documents if doc.score >= similarity_threshold]
    eligible.sort(key=lambda doc: doc.score, reverse=True)
    return eligible[:top_k]


def render_context(documents: Iterable[RetrievedDocument]) -> str:
    """Join document texts by line breaks, in the given order, inside the template."""
    return CONTEXT_TEMPLATE.format(context="\n".join(doc.text for doc in documents))
