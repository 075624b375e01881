"""API endpoints forwarding catalog and item-status lookups to archive.org."""

from fastapi import APIRouter, Depends, Query

from ..catalog import CatalogClient
from ..errors import InvalidSession
from ..sessions import SessionStore
from ..storage import RemoteStorageClient
from .deps import get_catalog, get_sessions, get_storage

router = APIRouter(prefix="/api", tags=["catalog"])


@router.get("/status/{identifier}")
async def get_item_status(identifier: str, storage: RemoteStorageClient = Depends(get_storage)):
    """Processing status of an item as archive.org reports it."""
    data = await storage.get_metadata(identifier)
    metadata = data.get("metadata") or {}
    return {
        "success": True,
        "status": metadata.get("status", "processing"),
        "files": data.get("files") or [],
        "metadata": metadata,
    }


@router.get("/collections")
async def list_collections(
    rows: int = Query(default=100, ge=1, le=1000),
    catalog: CatalogClient = Depends(get_catalog),
):
    """Most downloaded collections, for the upload form."""
    return {"success": True, "collections": await catalog.list_collections(rows=rows)}


@router.get("/items")
async def list_items(
    session_id: str = Query(...),
    sessions: SessionStore = Depends(get_sessions),
    catalog: CatalogClient = Depends(get_catalog),
):
    """Items belonging to the session's user, deduplicated by identifier."""
    session = sessions.get(session_id)
    if session is None:
        raise InvalidSession()
    sessions.touch(session.id)

    # Only the display name is known for a session; see list_user_items
    items = await catalog.list_user_items(session.display_name)
    return {"success": True, "items": items, "total": len(items)}
