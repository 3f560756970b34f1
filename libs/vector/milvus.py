"""
Milvus Cloud vector index over the HTTP v2 API.

Each namespace is a partition of a single collection. The collection is
expected to have a varchar primary key ``id``, a float vector field
``vector`` (COSINE metric) and dynamic fields enabled; metadata keys are
stored as dynamic fields so they can be filtered on.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from libs.common.errors import VectorIndexError
from libs.models.records import VectorMatch, VectorRecord

logger = structlog.get_logger(__name__)

_RESERVED_FIELDS = {"id", "vector", "distance"}


def _base_url(endpoint: Optional[str]) -> str:
    # Milvus Cloud format: https://in03-xxx.api.gcp-us-west1.zillizcloud.com:443
    if not endpoint or not endpoint.startswith("https://"):
        raise VectorIndexError(f"Unsupported Milvus endpoint format: {endpoint}")
    base_url = endpoint.replace(":443", "").replace(":19530", "").rstrip("/")
    if not base_url.endswith("/v2/vectordb"):
        base_url += "/v2/vectordb"
    return base_url


def _quote(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(str(value))


def build_filter_expression(filter: Optional[Dict[str, Any]]) -> Optional[str]:
    """Translate an equality filter mapping into a Milvus boolean expression."""
    if not filter:
        return None
    clauses = [f"{key} == {_quote(value)}" for key, value in filter.items() if value is not None]
    return " and ".join(clauses) or None


class MilvusVectorIndex:
    """``VectorIndex`` backed by Milvus Cloud."""

    def __init__(
        self,
        endpoint: Optional[str],
        token: Optional[str],
        collection: str,
        query_timeout_seconds: float = 15.0,
        upsert_timeout_seconds: float = 30.0,
    ):
        self.base_url = _base_url(endpoint)
        self.collection = collection
        self.query_timeout_seconds = query_timeout_seconds
        self.upsert_timeout_seconds = upsert_timeout_seconds
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self._partitions: set = set()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def _post(self, path: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(f"{self.base_url}{path}", headers=self.headers, json=payload)

        if response.status_code != 200:
            logger.error("Milvus request failed", path=path, status=response.status_code, response=response.text[:200])
            raise VectorIndexError(f"Milvus {path} returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            logger.error("Milvus returned a non-JSON body", path=path, response=response.text[:200])
            raise VectorIndexError(f"Milvus {path} returned an unreadable body") from e
        if not isinstance(data, dict):
            raise VectorIndexError(f"Milvus {path} returned an unexpected body")

        # Milvus reports application errors with HTTP 200 and a non-zero code
        if data.get("code", 0) != 0:
            logger.error("Milvus request rejected", path=path, code=data.get("code"), message=data.get("message"))
            raise VectorIndexError(f"Milvus {path} error {data.get('code')}: {data.get('message')}")
        return data

    async def _call(self, path: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        try:
            return await self._post(path, payload, timeout)
        except httpx.HTTPError as e:
            logger.error("Milvus transport error", path=path, error=str(e))
            raise VectorIndexError(f"Milvus {path} failed: {e}") from e

    async def _ensure_partition(self, namespace: str) -> None:
        if namespace in self._partitions:
            return
        data = await self._call(
            "/partitions/has",
            {"collectionName": self.collection, "partitionName": namespace},
            self.query_timeout_seconds,
        )
        if not data.get("data", {}).get("has"):
            await self._call(
                "/partitions/create",
                {"collectionName": self.collection, "partitionName": namespace},
                self.upsert_timeout_seconds,
            )
            logger.info("Milvus partition created", collection=self.collection, partition=namespace)
        self._partitions.add(namespace)

    async def upsert(self, namespace: str, records: List[VectorRecord]) -> None:
        if not records:
            return
        await self._ensure_partition(namespace)
        rows = [{**record.metadata, "id": record.id, "vector": record.vector} for record in records]
        await self._call(
            "/entities/upsert",
            {"collectionName": self.collection, "partitionName": namespace, "data": rows},
            self.upsert_timeout_seconds,
        )
        logger.debug("Milvus upsert completed", partition=namespace, count=len(rows))

    async def query(
        self,
        namespace: str,
        vector: List[float],
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[VectorMatch]:
        payload: Dict[str, Any] = {
            "collectionName": self.collection,
            "partitionNames": [namespace],
            "data": [vector],
            "limit": top_k,
            "outputFields": ["*"],
        }
        expression = build_filter_expression(filter)
        if expression:
            payload["filter"] = expression

        data = await self._call("/entities/search", payload, self.query_timeout_seconds)

        matches = []
        try:
            for hit in data.get("data", []):
                metadata = {key: value for key, value in hit.items() if key not in _RESERVED_FIELDS}
                matches.append(
                    VectorMatch(id=str(hit.get("id", "")), score=float(hit.get("distance", 0.0)), metadata=metadata)
                )
        except (AttributeError, TypeError, ValueError) as e:
            logger.error("Malformed Milvus search result", partition=namespace, error=str(e))
            raise VectorIndexError(f"Malformed Milvus search result: {e}") from e

        logger.info(
            "Vector search completed",
            partition=namespace,
            results_count=len(matches),
            top_score=matches[0].score if matches else 0,
        )
        return matches

    async def delete_one(self, namespace: str, record_id: str) -> None:
        await self._call(
            "/entities/delete",
            {
                "collectionName": self.collection,
                "partitionName": namespace,
                "filter": f"id in [{_quote(record_id)}]",
            },
            self.upsert_timeout_seconds,
        )
        logger.debug("Milvus delete completed", partition=namespace, record_id=record_id)
