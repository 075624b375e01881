"""Catalog lookups against archive.org's advanced search endpoint."""

from typing import Iterable, Optional

import httpx

from .config import RelayConfig
from .errors import RemoteError
from .logging import get_logger

logger = get_logger("catalog")

ITEM_FIELDS = ["identifier", "title", "mediatype", "collection", "publicdate", "downloads"]


def _quote_term(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def merge_by_identifier(*doc_lists: Iterable[dict]) -> dict[str, dict]:
    """Collapse several search results into one mapping keyed by identifier.

    The first document seen for an identifier wins; docs without one are skipped.
    """
    merged: dict[str, dict] = {}
    for docs in doc_lists:
        for doc in docs:
            identifier = doc.get("identifier")
            if identifier and identifier not in merged:
                merged[identifier] = doc
    return merged


class CatalogClient:
    """Read-only search client; no credentials needed."""

    def __init__(self, config: RelayConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.search_endpoint = config.search_endpoint
        self._client = httpx.AsyncClient(
            headers={"User-Agent": config.user_agent},
            timeout=config.metadata_timeout,
            transport=transport,
        )

    async def close(self):
        await self._client.aclose()

    async def search(
        self,
        query: str,
        fields: Optional[list[str]] = None,
        rows: int = 100,
        sort: Optional[str] = None,
    ) -> list[dict]:
        """Run one advanced search and return `response.docs`."""
        params: list[tuple[str, str]] = [("q", query)]
        for field_name in fields or ITEM_FIELDS:
            params.append(("fl[]", field_name))
        if sort:
            params.append(("sort[]", sort))
        params.append(("rows", str(rows)))
        params.append(("output", "json"))

        resp = await self._client.get(self.search_endpoint, params=params)
        if not resp.is_success:
            raise RemoteError(resp.status_code, resp.text, url=self.search_endpoint)

        data = resp.json()
        return (data.get("response") or {}).get("docs") or []

    async def list_user_items(self, uploader: str, display_name: Optional[str] = None) -> list[dict]:
        """Items uploaded by `uploader`, merged with items credited to the display name.

        The credential check only yields the account DisplayName. archive.org's
        `uploader` field holds the account e-mail, which is not exposed, so
        callers usually pass the display name here and the uploader query is a
        best guess. The creator query catches items credited to that name.
        """
        by_uploader = await self.search(f"uploader:{_quote_term(uploader)}")
        by_creator = await self.search(f"creator:{_quote_term(display_name or uploader)}")
        merged = merge_by_identifier(by_uploader, by_creator)
        logger.debug(
            f"Item search for {uploader}: {len(by_uploader)} + {len(by_creator)} -> {len(merged)}"
        )
        return list(merged.values())

    async def list_collections(self, rows: int = 100) -> list[dict]:
        """Most downloaded collections."""
        return await self.search(
            "mediatype:collection",
            fields=["identifier", "title"],
            rows=rows,
            sort="downloads desc",
        )
