"""
Language model adapter.

The pipeline talks to the model through ``LanguageModel.complete`` with
plain ``{role, content}`` messages. ``ChatOpenAILanguageModel`` maps them
onto LangChain messages and runs them through ``ChatOpenAI``.
"""

from typing import Dict, List, Optional, Protocol

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from libs.common.errors import LanguageModelError, UpstreamTimeoutError, with_timeout

logger = structlog.get_logger(__name__)

_ROLE_TO_MESSAGE = {
    "system": SystemMessage,
    "user": HumanMessage,
    "human": HumanMessage,
    "assistant": AIMessage,
    "ai": AIMessage,
}

_MESSAGE_TO_ROLE = {
    "system": "system",
    "human": "user",
    "ai": "assistant",
}


class LanguageModel(Protocol):
    """Chat completion over role/content messages."""

    async def complete(self, messages: List[Dict[str, str]], temperature: float, max_tokens: int) -> str:
        ...


def to_role_messages(messages: List[BaseMessage]) -> List[Dict[str, str]]:
    """Convert LangChain messages to ``{role, content}`` dicts."""
    return [{"role": _MESSAGE_TO_ROLE.get(m.type, "user"), "content": str(m.content)} for m in messages]


def to_langchain_messages(messages: List[Dict[str, str]]) -> List[BaseMessage]:
    """Convert ``{role, content}`` dicts to LangChain messages."""
    converted = []
    for message in messages:
        message_cls = _ROLE_TO_MESSAGE.get(message["role"])
        if message_cls is None:
            raise ValueError(f"Unsupported message role: {message['role']}")
        converted.append(message_cls(content=message["content"]))
    return converted


class ChatOpenAILanguageModel:
    """``LanguageModel`` backed by ``langchain_openai.ChatOpenAI``."""

    def __init__(self, model: str, api_key: Optional[str], timeout_seconds: float = 60.0):
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._chat = ChatOpenAI(model=model, api_key=api_key, max_retries=1)

    async def complete(self, messages: List[Dict[str, str]], temperature: float, max_tokens: int) -> str:
        """
        Run one chat completion.

        Raises:
            UpstreamTimeoutError: if the call exceeds ``timeout_seconds``.
            LanguageModelError: for any other failure or an empty completion.
        """
        runnable = self._chat.bind(temperature=temperature, max_tokens=max_tokens)
        try:
            response = await with_timeout(
                runnable.ainvoke(to_langchain_messages(messages)),
                self.timeout_seconds,
                "language model",
            )
        except UpstreamTimeoutError:
            logger.error("Language model timed out", model=self.model, timeout_seconds=self.timeout_seconds)
            raise
        except Exception as e:
            logger.error("Language model call failed", model=self.model, error=str(e), error_type=type(e).__name__)
            raise LanguageModelError(f"Language model call failed: {e}") from e

        text = response.content if isinstance(response.content, str) else str(response.content)
        if not text.strip():
            raise LanguageModelError("Language model returned an empty completion")

        usage = getattr(response, "usage_metadata", None) or {}
        logger.info(
            "Language model completion",
            model=self.model,
            output_chars=len(text),
            input_tokens=usage.get("input_tokens"),
            output_tokens=usage.get("output_tokens"),
        )
        return text
