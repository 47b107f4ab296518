"""Health, node status and discovery status endpoints."""

from typing import Any

import httpx
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from starlette import status

from filedrop.core.config import format_bytes
from filedrop.core.events import AppState, get_app_state
from filedrop.core.logging import get_logger
from filedrop.discovery.relays import decode_pubkey, to_npub
from filedrop.pinning.daemon import DaemonError
from filedrop.pinning.models import RefClass, RefStatus

logger = get_logger(__name__)

router = APIRouter(tags=["status"])


def _limit(configured: str | None, size: int) -> dict[str, Any]:
    return {"configured": configured, "bytes": size, "formatted": format_bytes(size)}


@router.get("/health")
async def health(
    request: Request, state: AppState = Depends(get_app_state)
) -> JSONResponse:
    """
    Node health: healthy while the daemon has at least one peer.

    Returns
    -------
        200 with the peer count, or 503 when the node is isolated or down
    """
    result = await state.daemon.health()
    if result["healthy"]:
        return JSONResponse({"status": "healthy", "peers": result["peers"]})
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "unhealthy",
            "peers": result["peers"],
            "error": result.get("error", "no connected peers"),
            "correlation_id": getattr(request.state, "correlation_id", None),
        },
    )


@router.get("/health/components")
async def component_health(state: AppState = Depends(get_app_state)) -> dict[str, Any]:
    """Per-component health of the running service."""
    return await state.health_check()


@router.get("/status")
async def node_status(state: AppState = Depends(get_app_state)) -> JSONResponse:
    """
    Daemon telemetry, configured limits and replication queue counts.

    Returns
    -------
        Status document, or 503 when the daemon cannot be reached
    """
    try:
        node = await state.daemon.node_stats()
    except (DaemonError, httpx.HTTPError, ValueError) as e:
        logger.warning("status_daemon_unavailable", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unavailable", "error": str(e)},
        )

    config = state.settings
    last_activity = state.scheduler.last_activity
    return JSONResponse(
        {
            "status": "online",
            "version": config.version,
            **node,
            "limits": {
                "storage_max": _limit(config.STORAGE_MAX, config.storage_max_bytes),
                "file_limit": _limit(config.FILE_LIMIT, config.file_limit_bytes),
                "remote_file_limit": _limit(
                    config.REMOTE_FILE_LIMIT, config.remote_file_limit_bytes
                ),
                "max_concurrent_downloads": state.downloads.limit,
            },
            "queue": {
                "stats": state.store.stats(),
                "active": {
                    ref_class.value: len(state.scheduler.active_tasks(ref_class))
                    for ref_class in RefClass
                },
                "concurrency": {
                    ref_class.value: limit
                    for ref_class, limit in state.scheduler.concurrency.items()
                },
                "last_activity": last_activity,
            },
            "gateway": state.gateways.get_selected(),
            "active_downloads": state.downloads.active,
        }
    )


@router.get("/nostr")
async def nostr_status(
    limit: int = Query(50, ge=1, le=200, description="Number of recent references"),
    state: AppState = Depends(get_app_state),
) -> dict[str, Any]:
    """
    Discovery configuration, last run report and recently queued references.

    Args:
        limit: Number of recent references to include (max 200)
    """
    recent = []
    for ref in state.store.recent(limit):
        entry = ref.to_dict()
        entry["author_npub"] = to_npub(ref.author)
        entry["url"] = state.gateways.build_url(ref.cid)
        recent.append(entry)

    return {
        "npubs": [
            {"npub": npub, "pubkey": decode_pubkey(npub)}
            for npub in state.discovery.npubs
        ],
        "follow_cache_enabled": state.discovery.follow_enabled,
        "last_run": state.discovery.last_run.to_dict(),
        "stats": state.store.stats(),
        "sources": state.store.summary_by_source(),
        "pending": {
            ref_class.value: state.store.count_by_status(RefStatus.PENDING, ref_class)
            for ref_class in RefClass
        },
        "recent": recent,
    }
