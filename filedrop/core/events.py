"""Application startup and shutdown events."""

import random
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from fastapi import Request
from prometheus_client import Counter

from filedrop.api.v1.downloads import DownloadSlots
from filedrop.core.config import Settings, settings
from filedrop.core.logging import get_logger
from filedrop.discovery.job import DiscoveryJob
from filedrop.discovery.relays import RelayPool, decode_pubkey
from filedrop.gateways.selector import GatewaySelector
from filedrop.pinning.daemon import IpfsClient
from filedrop.pinning.models import RefClass
from filedrop.pinning.scheduler import ReplicationScheduler
from filedrop.pinning.store import ReferenceStore

# Prometheus metrics
REQUESTS_TOTAL = Counter(
    "filedrop_http_requests_total",
    "Total number of HTTP requests",
    labelnames=["method", "path"],
)

RESPONSES_TOTAL = Counter(
    "filedrop_http_responses_total",
    "Total number of HTTP responses",
    labelnames=["status_code"],
)

logger = get_logger(__name__)


def valid_npubs(npubs: Iterable[str]) -> list[str]:
    """Drop identities that do not decode to a public key."""
    valid = []
    for npub in npubs:
        try:
            decode_pubkey(npub)
        except ValueError as e:
            logger.error("invalid_npub_ignored", npub=npub[:12], error=str(e))
            continue
        valid.append(npub)
    return valid


class AppState:
    """Long-lived service objects shared by the background loops and handlers."""

    def __init__(
        self,
        config: Settings,
        daemon: IpfsClient,
        store: ReferenceStore,
        scheduler: ReplicationScheduler,
        gateways: GatewaySelector,
        discovery: DiscoveryJob,
        downloads: DownloadSlots,
    ) -> None:
        self.settings = config
        self.daemon = daemon
        self.store = store
        self.scheduler = scheduler
        self.gateways = gateways
        self.discovery = discovery
        self.downloads = downloads

    @classmethod
    def from_settings(
        cls, config: Settings, rng: random.Random | None = None
    ) -> "AppState":
        """Wire every component from configuration."""
        rng = rng or random.Random()
        daemon = IpfsClient(
            config.IPFS_API,
            timeout=config.DAEMON_TIMEOUT,
            transfer_read_timeout=config.TRANSFER_READ_TIMEOUT,
        )
        store = ReferenceStore(rng=rng)
        scheduler = ReplicationScheduler(
            store,
            daemon,
            concurrency={
                RefClass.SELF: config.PIN_CONCURRENCY,
                RefClass.FOLLOW: config.CACHE_CONCURRENCY,
            },
            stale_threshold=config.STALE_THRESHOLD,
            sweep_interval=config.STALE_SWEEP_INTERVAL,
            pass_delay=(config.PASS_DELAY_MIN, config.PASS_DELAY_MAX),
            idle_delay=(config.IDLE_DELAY_MIN, config.IDLE_DELAY_MAX),
            rng=rng,
        )
        gateways = GatewaySelector(
            config.GATEWAYS,
            default=config.DEFAULT_GATEWAY,
            test_cid=config.GATEWAY_TEST_CID,
            probe_timeout=config.GATEWAY_PROBE_TIMEOUT,
            refresh_interval=config.GATEWAY_REFRESH_INTERVAL,
            rng=rng,
        )
        pool = RelayPool(
            config.RELAYS,
            relay_count=config.RELAY_COUNT,
            connect_timeout=config.RELAY_CONNECT_TIMEOUT,
            max_wait=config.RELAY_MAX_WAIT,
            rng=rng,
        )
        discovery = DiscoveryJob(
            pool,
            store,
            valid_npubs(config.NPUBS),
            kinds=config.KIND_WHITELIST,
            page_size=config.PAGE_SIZE,
            max_pages=config.MAX_PAGES,
            follow_max_pages=config.FOLLOW_MAX_PAGES,
            follow_author_chunk=config.FOLLOW_AUTHOR_CHUNK,
            follow_enabled=config.FOLLOW_CACHE_ENABLED,
            interval=config.NOSTR_CHECK_INTERVAL,
            jitter=config.NOSTR_CHECK_JITTER,
            rng=rng,
        )
        return cls(
            config,
            daemon,
            store,
            scheduler,
            gateways,
            discovery,
            DownloadSlots(config.MAX_CONCURRENT_DOWNLOADS),
        )

    async def health_check(self) -> dict[str, Any]:
        """Check health of all components.

        Returns:
            Dict containing health status of all components
        """
        daemon = await self.daemon.health()
        health_status: dict[str, Any] = {
            "status": "healthy",
            "components": {
                "daemon": daemon["healthy"],
                "gateway": not self.gateways.fallback_active,
            },
            "details": {
                "daemon": daemon,
                "gateway": self.gateways.get_selected(),
                "references": len(self.store),
                "active_transfers": len(self.scheduler.active_tasks()),
                "active_downloads": self.downloads.active,
            },
        }
        if not daemon["healthy"]:
            health_status["status"] = "unhealthy"
        elif not all(health_status["components"].values()):
            health_status["status"] = "degraded"
        return health_status


def get_app_state(request: Request) -> AppState:
    """FastAPI dependency returning the running :class:`AppState`."""
    state: AppState = request.app.state.filedrop
    return state


def create_start_app_handler(
    app: Any, config: Settings = settings
) -> Callable[[], Awaitable[None]]:
    """Create startup event handler.

    Args:
        app: FastAPI application instance
        config: Settings used to build the components

    Returns:
        Startup handler function
    """

    async def start_app() -> None:
        state = AppState.from_settings(config)
        app.state.filedrop = state

        state.gateways.start()
        state.scheduler.start()
        state.discovery.start()

        logger.info(
            "application_started",
            ipfs_api=config.IPFS_API,
            npubs=len(state.discovery.npubs),
            follow_cache=config.FOLLOW_CACHE_ENABLED,
            storage_max=config.STORAGE_MAX,
        )

    return start_app


def create_stop_app_handler(app: Any) -> Callable[[], Awaitable[None]]:
    """Create shutdown event handler.

    Args:
        app: FastAPI application instance

    Returns:
        Shutdown handler function
    """

    async def stop_app() -> None:
        state: AppState | None = getattr(app.state, "filedrop", None)
        if state is None:
            return
        try:
            await state.discovery.stop()
            await state.scheduler.stop()
            await state.gateways.stop()
            await state.daemon.aclose()
            logger.info("application_stopped")
        except Exception as e:
            logger.error("shutdown_error", error=str(e))
            raise

    return stop_app
