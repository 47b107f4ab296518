"""Public gateway probing and selection for shareable links."""

import asyncio
import random
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from urllib.parse import quote

import httpx

from filedrop.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_GATEWAY = "https://dweb.link"
GATEWAY_TEST_CID = "QmV2ZAJVPafPNhKjorD2v9ZnfENYDC5Be5gTKiymaCMmeN"


@dataclass
class GatewayCandidate:
    """Probe state of one gateway."""

    url: str
    last_probed_at: float | None = None
    healthy: bool = False


class GatewaySelector:
    """Keeps a working public gateway on hand for building content links.

    Probing stops at the first gateway that serves the test object
    correctly; the order is shuffled on every refresh so load spreads
    across healthy gateways. When nothing passes, the fixed default is
    used. Link construction never waits on a probe.
    """

    def __init__(
        self,
        gateways: Sequence[str],
        default: str = DEFAULT_GATEWAY,
        test_cid: str = GATEWAY_TEST_CID,
        probe_timeout: float = 6.0,
        refresh_interval: float = 600.0,
        rng: random.Random | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the selector.

        Args:
            gateways: Candidate gateway base URLs
            default: Fallback gateway when no candidate passes
            test_cid: CID of the well-known probe object
            probe_timeout: Seconds allowed per probe
            refresh_interval: Seconds between background refreshes
            rng: Random source used to shuffle probe order
            transport: Optional transport override (tests)
            wall_clock: Epoch clock for probe timestamps
        """
        self.default = default.rstrip("/")
        self.test_cid = test_cid
        self.probe_timeout = probe_timeout
        self.refresh_interval = refresh_interval
        self.rng = rng or random.Random()
        self.transport = transport
        self.wall_clock = wall_clock
        self.candidates: dict[str, GatewayCandidate] = {
            url.rstrip("/"): GatewayCandidate(url=url.rstrip("/")) for url in gateways
        }
        self.last_refresh_at: float | None = None

        self._selected: str | None = None
        self._inflight: asyncio.Task[str] | None = None
        self._loop_task: asyncio.Task[None] | None = None

    def get_selected(self) -> str:
        """The current gateway, or the default if none has been selected."""
        return self._selected or self.default

    @property
    def fallback_active(self) -> bool:
        """True when the last refresh found no working candidate."""
        return self._selected is None and self.last_refresh_at is not None

    def build_url(self, cid: str, filename: str | None = None) -> str:
        """Shareable URL for ``cid`` on the selected gateway."""
        url = f"{self.get_selected()}/ipfs/{cid}"
        if filename:
            url += f"?filename={quote(filename, safe='')}"
        return url

    async def probe(self, client: httpx.AsyncClient, base_url: str) -> bool:
        """Check that ``base_url`` serves the probe object with its marker."""
        try:
            response = await client.get(
                f"{base_url}/ipfs/{self.test_cid}",
                headers={"Accept": "application/json"},
            )
            if not response.is_success:
                return False
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("gateway_probe_failed", gateway=base_url, error=str(e))
            return False
        return isinstance(body, dict) and body.get("check") is True

    async def refresh(self) -> str:
        """Probe candidates until one passes and select it.

        Concurrent callers share a single probe round.

        Returns:
            The selected gateway (the default when every probe fails)
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._refresh())
        return await asyncio.shield(self._inflight)

    async def _refresh(self) -> str:
        order = list(self.candidates)
        self.rng.shuffle(order)
        selected: str | None = None

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.probe_timeout),
            follow_redirects=True,
            transport=self.transport,
        ) as client:
            for url in order:
                candidate = self.candidates[url]
                candidate.healthy = await self.probe(client, url)
                candidate.last_probed_at = self.wall_clock()
                if candidate.healthy:
                    selected = url
                    break

        self.last_refresh_at = self.wall_clock()
        if selected is None:
            logger.warning(
                "no_working_gateway", candidates=len(order), fallback=self.default
            )
        else:
            logger.info("gateway_selected", gateway=selected)
        self._selected = selected
        return self.get_selected()

    async def _refresh_loop(self) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(self.refresh_interval)

    def start(self) -> None:
        """Refresh now and then every ``refresh_interval`` seconds."""
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(
                self._refresh_loop(), name="gateway-refresh"
            )

    async def stop(self) -> None:
        """Stop the background refresh."""
        tasks = [t for t in (self._loop_task, self._inflight) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        self._inflight = None
