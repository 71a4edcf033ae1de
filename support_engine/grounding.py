"""
Grounded Response Generation
============================
Drafts a customer reply for auto-handled categories (order status, product,
general questions...) using only the seller's own training content.

    no training data          → None (nothing to ground on; route to review)
    training, none relevant   → force-grounded prompt over up to 5 training docs
    relevant passages         → grounded prompt over those passages

The LLM is the LangChain chat model from providers.build_llm(). A None return
always means "do not auto-send"; the router turns it into an approval item.
"""
import logging

from langchain_core.messages import HumanMessage, SystemMessage

from .knowledge import NO_TRAINING_DATA, NONE_RELEVANT, KnowledgeGateway, lookup_knowledge
from .models import Category
from .prompts import (
    FORCE_GROUNDED_USER_TEMPLATE,
    GROUNDED_SYSTEM_PROMPT,
    GROUNDED_USER_TEMPLATE,
    INSUFFICIENT_KNOWLEDGE,
)

logger = logging.getLogger(__name__)

MAX_DOCUMENTS      = 5
MAX_DOCUMENT_CHARS = 1500


def _join(passages: list[str]) -> str:
    return "\n\n---\n\n".join(p[:MAX_DOCUMENT_CHARS] for p in passages[:MAX_DOCUMENTS])


class GroundedResponder:
    def __init__(self, gateway: KnowledgeGateway, llm):
        self.gateway = gateway
        self.llm     = llm

    async def build_prompt(self, user_id: str, subject: str, body: str, category: Category) -> str | None:
        knowledge = await lookup_knowledge(self.gateway, user_id, f"{subject}\n{body}")

        if knowledge.status == NO_TRAINING_DATA:
            logger.info("[grounding] No training data for user %s", user_id)
            return None

        if knowledge.status == NONE_RELEVANT:
            try:
                documents = await self.gateway.get_all_training_content(user_id)
            except Exception as exc:
                logger.warning("[grounding] Could not load training content: %s", exc)
                return None
            if not documents:
                return None
            logger.info("[grounding] Nothing relevant; forcing %d training docs", min(len(documents), MAX_DOCUMENTS))
            return FORCE_GROUNDED_USER_TEMPLATE.format(
                marker=INSUFFICIENT_KNOWLEDGE,
                knowledge=_join(documents),
                category=category.value,
                subject=subject,
                body=body,
            )

        return GROUNDED_USER_TEMPLATE.format(
            knowledge=_join(knowledge.relevant_content),
            category=category.value,
            subject=subject,
            body=body,
        )

    async def generate(self, user_id: str, subject: str, body: str, category: Category) -> str | None:
        prompt = await self.build_prompt(user_id, subject, body, category)
        if prompt is None:
            return None

        try:
            response = await self.llm.ainvoke([
                SystemMessage(content=GROUNDED_SYSTEM_PROMPT),
                HumanMessage(content=prompt),
            ])
        except Exception as exc:
            logger.warning("[grounding] LLM call failed: %s", exc)
            return None

        text = (response.content or "").strip() if isinstance(response.content, str) else ""
        if not text or INSUFFICIENT_KNOWLEDGE in text:
            logger.info("[grounding] Model reported insufficient knowledge")
            return None
        return text
