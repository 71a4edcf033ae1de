"""
Knowledge Gateway
=================
Consumer-side interface to the seller's training content (crawled pages,
uploaded FAQs). Chunking, embeddings and search live elsewhere; the engine
only needs two questions answered:

  get_relevant_knowledge(user_id, query)  → passages relevant to this email
  get_all_training_content(user_id)       → every training document, raw

Three outcomes matter to callers (KnowledgeResult.status):

  "no_training_data"  nothing was ever trained; generic, lower-confidence path
  "none_relevant"     training exists but nothing matched; callers must force
                      the answer onto whatever training content exists
  "relevant"          passages found; ground on them
"""
import logging
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

NO_TRAINING_DATA = "no_training_data"
NONE_RELEVANT    = "none_relevant"
RELEVANT         = "relevant"


class KnowledgeResult(BaseModel):
    relevant_content: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    has_training_data: bool = False
    method: str = "none"

    @property
    def status(self) -> str:
        if not self.has_training_data:
            return NO_TRAINING_DATA
        if not self.relevant_content:
            return NONE_RELEVANT
        return RELEVANT


@runtime_checkable
class KnowledgeGateway(Protocol):
    async def get_relevant_knowledge(self, user_id: str, query: str) -> KnowledgeResult: ...

    async def get_all_training_content(self, user_id: str) -> list[str]: ...


class NullKnowledgeGateway:
    """A seller with no training content at all."""

    async def get_relevant_knowledge(self, user_id: str, query: str) -> KnowledgeResult:
        return KnowledgeResult()

    async def get_all_training_content(self, user_id: str) -> list[str]:
        return []


class StaticKnowledgeGateway:
    """
    In-process gateway over a fixed list of documents, matched by shared
    keywords. Used by the demo and tests; production wires the search service.
    """

    def __init__(self, documents: dict[str, str], min_overlap: int = 2):
        self.documents   = documents
        self.min_overlap = min_overlap

    @staticmethod
    def _words(text: str) -> set[str]:
        return {w.strip(".,!?:;\"'()").lower() for w in text.split() if len(w) > 3}

    async def get_relevant_knowledge(self, user_id: str, query: str) -> KnowledgeResult:
        if not self.documents:
            return KnowledgeResult()
        query_words = self._words(query)
        hits = [
            (source, text) for source, text in self.documents.items()
            if len(query_words & self._words(text)) >= self.min_overlap
        ]
        return KnowledgeResult(
            relevant_content=[text for _, text in hits],
            sources=[source for source, _ in hits],
            has_training_data=True,
            method="keyword",
        )

    async def get_all_training_content(self, user_id: str) -> list[str]:
        return list(self.documents.values())


async def lookup_knowledge(gateway: KnowledgeGateway, user_id: str, query: str) -> KnowledgeResult:
    """
    Query the gateway without letting a search outage stop classification.

    A failed lookup is reported as "no training data", which only ever makes
    the downstream decision more cautious.
    """
    try:
        return await gateway.get_relevant_knowledge(user_id, query)
    except Exception as exc:
        logger.warning("[knowledge] Lookup failed for user %s: %s", user_id, exc)
        return KnowledgeResult(method="error")
