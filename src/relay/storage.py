"""
Object storage client for the Supabase Storage REST API.

Only the two operations the bucket engine needs are implemented:
listing a bucket (newest first) and resolving a public URL.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

logger = logging.getLogger("relay.storage")


class StorageError(Exception):
    """A storage API call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class FileRecord:
    """A storage listing entry."""

    name: str
    created_at: Optional[datetime] = None
    id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable storage timestamp: %r", value)
        return None


class StorageClient:
    """Async client for one storage bucket.

    Args:
        base_url: Project URL (``SUPABASE_URL``).
        service_key: Service-role key used for ``apikey`` and bearer auth.
        bucket: Bucket name.
        timeout: HTTP request timeout in seconds.
        transport: Optional httpx transport (used by tests).
    """

    def __init__(
        self,
        base_url: str,
        service_key: str,
        bucket: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self._service_key = service_key
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "apikey": self._service_key,
                    "Authorization": f"Bearer {self._service_key}",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def list_files(
        self,
        prefix: str = "",
        limit: int = 100,
        sort_column: str = "created_at",
        sort_order: str = "desc",
    ) -> List[FileRecord]:
        """List up to *limit* objects under *prefix*, sorted server-side.

        Folder placeholders (entries without an id) are omitted.

        Raises:
            StorageError: On transport errors or non-2xx responses.
        """
        client = await self._get_client()
        url = f"{self.base_url}/storage/v1/object/list/{quote(self.bucket, safe='')}"
        payload = {
            "prefix": prefix,
            "limit": limit,
            "offset": 0,
            "sortBy": {"column": sort_column, "order": sort_order},
        }

        try:
            response = await client.post(url, json=payload)
        except httpx.RequestError as exc:
            raise StorageError(f"list request failed: {exc}") from exc

        if response.status_code >= 400:
            message = response.text
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                message = body.get("message") or body.get("error") or message
            raise StorageError(
                f"list {self.bucket!r} failed: {message}", status_code=response.status_code
            )

        records: List[FileRecord] = []
        for entry in response.json() or []:
            name = entry.get("name")
            if not name or entry.get("id") is None:
                continue
            records.append(
                FileRecord(
                    name=name,
                    created_at=_parse_timestamp(entry.get("created_at")),
                    id=entry.get("id"),
                    metadata=entry.get("metadata") or {},
                )
            )
        return records

    def get_public_url(self, name: str) -> str:
        """Return the public URL of object *name* in this bucket.

        Raises:
            StorageError: If *name* is empty.
        """
        if not name:
            raise StorageError("cannot resolve a public URL for an empty name")
        return (
            f"{self.base_url}/storage/v1/object/public/"
            f"{quote(self.bucket, safe='')}/{quote(name)}"
        )
