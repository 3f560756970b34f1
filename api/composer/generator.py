"""Draft answer generation from retrieved chunks."""

from typing import Sequence

import structlog

from api.composer.prompts import NO_CONTEXT_RESPONSE, RAG_ANSWER_TEMPLATE, SIMPLE_QUERY_TEMPLATE, build_context
from api.llm.client import LanguageModel, to_role_messages
from api.models import Chunk

logger = structlog.get_logger(__name__)

SIMPLE_QUERY_TEMPERATURE = 0.7
SIMPLE_QUERY_MAX_TOKENS = 150


class AnswerGenerator:
    """
    Asks the language model to answer from the supplied chunks only.

    The draft is returned as-is; citation checking is left to
    ``CitationValidator``. Model failures propagate: there is no fallback
    to an unvalidated answer.
    """

    def __init__(self, llm: LanguageModel, temperature: float = 0.2, max_tokens: int = 2048):
        self.llm = llm
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def answer(self, question: str, chunks: Sequence[Chunk], zone: str = "", development: str = "") -> str:
        """
        Generate a cited draft answer.

        Args:
            question: User question
            chunks: Retrieved chunks; ``[n]`` in the draft cites ``chunks[n-1]``
            zone: Zone shown to the model
            development: Development shown to the model

        Returns:
            Raw draft text, or the fixed no-context answer when ``chunks`` is empty
        """
        if not chunks:
            logger.info("No context for question, skipping language model", question_preview=question[:50])
            return NO_CONTEXT_RESPONSE

        messages = RAG_ANSWER_TEMPLATE.format_messages(
            question=question,
            zone=zone,
            development=development,
            context=build_context(chunks),
        )
        draft = await self.llm.complete(to_role_messages(messages), self.temperature, self.max_tokens)
        logger.info("Draft answer generated", question_preview=question[:50], chunks=len(chunks), draft_chars=len(draft))
        return draft

    async def answer_simple(self, question: str) -> str:
        """Short conversational reply for greetings and small talk."""
        messages = SIMPLE_QUERY_TEMPLATE.format_messages(question=question)
        return await self.llm.complete(to_role_messages(messages), SIMPLE_QUERY_TEMPERATURE, SIMPLE_QUERY_MAX_TOKENS)
