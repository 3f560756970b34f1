"""Text embedding clients."""

from __future__ import annotations

from typing import List, Optional, Protocol

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from libs.common.errors import EmbeddingError

logger = structlog.get_logger(__name__)

OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"


class Embedder(Protocol):
    """Turns texts into fixed-dimension vectors."""

    async def embed(self, texts: List[str]) -> List[List[float]]:
        ...


class OpenAIEmbedder:
    """OpenAI client for generating embeddings."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "text-embedding-3-large",
        timeout_seconds: float = 30.0,
        base_url: str = OPENAI_EMBEDDINGS_URL,
    ):
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.base_url = base_url

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _post(self, texts: List[str]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds)) as client:
            return await client.post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={"input": [t[:8000] for t in texts], "model": self.model, "encoding_format": "float"},
            )

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Batch embeddings for multiple inputs in one request."""
        if not self.api_key:
            raise EmbeddingError("OpenAI API key not configured")
        if not texts:
            return []

        try:
            response = await self._post(texts)
        except httpx.HTTPError as e:
            logger.error("OpenAI embedding request failed", error=str(e))
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        if response.status_code != 200:
            logger.error("OpenAI embedding error", status=response.status_code, response=response.text[:200])
            raise EmbeddingError(f"Embedding request returned HTTP {response.status_code}")

        try:
            data = response.json()
            vectors = [item["embedding"] for item in sorted(data["data"], key=lambda item: item["index"])]
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Malformed OpenAI embedding response", error=str(e), response=response.text[:200])
            raise EmbeddingError(f"Malformed embedding response: {e}") from e
        logger.debug("Embeddings generated", model=self.model, count=len(vectors), dim=len(vectors[0]) if vectors else 0)
        return vectors
