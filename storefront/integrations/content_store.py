"""Content store port and the Sanity HTTP adapter.

Orders land in the same document store as the catalog. Reads can run with the
public read token; writes need the separate write token.
"""

import json
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx

from storefront.common.config import settings
from storefront.common.errors import ConfigurationError, PersistenceError
from storefront.common.logging import logger
from storefront.common.metrics import external_call_seconds


class ContentStore(ABC):
    """Document store consumed as `fetch(query) -> documents` and `create(document) -> id`."""

    def ensure_configured(self) -> None:
        """Raise `ConfigurationError` when write credentials are missing."""

    @abstractmethod
    async def fetch(self, query: str, params: dict[str, Any] | None = None) -> list[dict]:
        ...

    @abstractmethod
    async def create(self, document: dict) -> str:
        ...


class SanityContentStore(ContentStore):
    def __init__(
        self,
        project_id: str | None = None,
        dataset: str | None = None,
        api_version: str | None = None,
        read_token: str | None = None,
        write_token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.project_id = project_id if project_id is not None else settings.sanity_project_id
        self.dataset = dataset or settings.sanity_dataset
        self.api_version = (api_version or settings.sanity_api_version).lstrip("v")
        self.read_token = read_token if read_token is not None else settings.sanity_read_token
        self.write_token = write_token if write_token is not None else settings.sanity_write_token
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

    def ensure_configured(self) -> None:
        if not self.project_id or not self.write_token:
            logger.error("sanity project id or write token is missing")
            raise ConfigurationError("Internal server configuration error (content store).")

    @property
    def base_url(self) -> str:
        return f"https://{self.project_id}.api.sanity.io/v{self.api_version}/data"

    async def _request(self, operation: str, method: str, path: str, token: str | None, **kwargs) -> dict:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, headers=headers, transport=self.transport
            ) as client:
                resp = await client.request(method, path, **kwargs)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPError as exc:
            logger.error("sanity request failed operation=%s error=%s", operation, exc)
            raise PersistenceError(f"Content store {operation} failed.", details=str(exc)) from exc
        finally:
            external_call_seconds.labels(
                service=settings.service_name, dependency="sanity", operation=operation
            ).observe(time.perf_counter() - started)

    async def fetch(self, query: str, params: dict[str, Any] | None = None) -> list[dict]:
        if not self.project_id:
            raise ConfigurationError("Internal server configuration error (content store).")
        query_params = {"query": query}
        for name, value in (params or {}).items():
            query_params[f"${name}"] = json.dumps(value)
        body = await self._request(
            "query", "GET", f"/query/{self.dataset}", self.read_token or self.write_token, params=query_params
        )
        result = body.get("result")
        if result is None:
            return []
        return result if isinstance(result, list) else [result]

    async def create(self, document: dict) -> str:
        self.ensure_configured()
        body = await self._request(
            "mutate",
            "POST",
            f"/mutate/{self.dataset}",
            self.write_token,
            params={"returnIds": "true"},
            json={"mutations": [{"create": document}]},
        )
        results = body.get("results") or []
        if not results or not results[0].get("id"):
            raise PersistenceError("Content store did not return a document id.", details=body)
        return results[0]["id"]
