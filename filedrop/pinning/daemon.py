"""HTTP RPC client for the local IPFS (Kubo) daemon."""

import asyncio
import json
import time
from collections.abc import Callable
from typing import IO, Any

import httpx

from filedrop.core.logging import get_logger
from filedrop.pinning.retry import with_daemon_retry

logger = get_logger(__name__)

ProgressCallback = Callable[[int], None]

PROGRESS_REPORT_INTERVAL = 5.0


class DaemonError(Exception):
    """The daemon explicitly rejected a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class IpfsClient:
    """Thin async wrapper over the daemon's ``/api/v0`` RPC endpoints.

    Explicit rejections raise :class:`DaemonError`; transport problems and
    timeouts propagate as ``httpx`` exceptions so callers can tell a refused
    request from one that may still be progressing.
    """

    def __init__(
        self,
        api_url: str = "http://127.0.0.1:5001",
        timeout: float = 10.0,
        transfer_read_timeout: float = 300.0,
        upload_timeout: float = 3600.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the client.

        Args:
            api_url: Base URL of the daemon RPC API
            timeout: Timeout for short RPC calls in seconds
            transfer_read_timeout: Max silence on a streaming transfer
            upload_timeout: Timeout for forwarding uploads to the daemon
            transport: Optional transport override (tests)
            clock: Monotonic clock used to throttle progress reports
        """
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.transfer_timeout = httpx.Timeout(timeout, read=transfer_read_timeout)
        self.upload_timeout = httpx.Timeout(upload_timeout, connect=timeout)
        self.clock = clock
        self._client = httpx.AsyncClient(
            base_url=f"{self.api_url}/api/v0",
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    async def _rpc(
        self,
        path: str,
        params: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        response = await self._client.post(
            path,
            params=params,
            timeout=httpx.Timeout(timeout) if timeout else httpx.USE_CLIENT_DEFAULT,
        )
        if response.status_code >= 400:
            raise DaemonError(
                f"{path} returned HTTP {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return dict(response.json())

    @with_daemon_retry()
    async def _pin_ls(self, cid: str) -> dict[str, Any]:
        return await self._rpc("/pin/ls", {"arg": cid, "type": "recursive"})

    async def is_pinned(self, cid: str) -> bool:
        """Check whether ``cid`` is recursively pinned; any failure means no."""
        try:
            data = await self._pin_ls(cid)
        except (DaemonError, httpx.HTTPError, ValueError) as e:
            logger.debug("pin_ls_negative", cid=cid, reason=str(e))
            return False
        return bool(data.get("Keys"))

    async def pin(
        self, cid: str, on_progress: ProgressCallback | None = None
    ) -> dict[str, Any]:
        """Recursively pin ``cid``, streaming progress while blocks arrive.

        Raises:
            DaemonError: If the daemon rejects the pin
        """
        params = {"arg": cid, "recursive": "true", "progress": "true"}
        result: dict[str, Any] | None = None

        async with self._client.stream(
            "POST", "/pin/add", params=params, timeout=self.transfer_timeout
        ) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise DaemonError(
                    f"pin/add returned HTTP {response.status_code}: {body}",
                    status_code=response.status_code,
                )

            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    data = json.loads(line)
                except ValueError:
                    continue
                if data.get("Type") == "error":
                    raise DaemonError(str(data.get("Message", "pin failed")))
                if "Progress" in data and on_progress is not None:
                    on_progress(int(data["Progress"]))
                if data.get("Pins"):
                    result = data

        return result if result is not None else {"Pins": [cid]}

    async def cache(self, cid: str, on_progress: ProgressCallback | None = None) -> int:
        """Fetch ``cid`` into the local repo without pinning it.

        Returns:
            Number of bytes received

        Raises:
            DaemonError: If the daemon rejects the request
        """
        size = 0
        last_report = self.clock()

        async with self._client.stream(
            "POST", "/block/get", params={"arg": cid}, timeout=self.transfer_timeout
        ) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise DaemonError(
                    f"block/get returned HTTP {response.status_code}: {body}",
                    status_code=response.status_code,
                )

            async for chunk in response.aiter_bytes():
                size += len(chunk)
                now = self.clock()
                if on_progress is not None and now - last_report >= PROGRESS_REPORT_INTERVAL:
                    last_report = now
                    on_progress(size)

        return size

    @with_daemon_retry()
    async def _files_stat(self, cid: str) -> dict[str, Any]:
        return await self._rpc("/files/stat", {"arg": f"/ipfs/{cid}"}, timeout=15.0)

    @with_daemon_retry()
    async def _block_stat(self, cid: str) -> dict[str, Any]:
        return await self._rpc("/block/stat", {"arg": cid}, timeout=15.0)

    async def get_size(self, cid: str) -> int:
        """Size of ``cid`` in bytes, falling back to its root block size, else 0."""
        try:
            stat = await self._files_stat(cid)
            return int(stat.get("CumulativeSize") or stat.get("Size") or 0)
        except (DaemonError, httpx.HTTPError, ValueError):
            pass

        try:
            block = await self._block_stat(cid)
            return int(block.get("Size") or 0)
        except (DaemonError, httpx.HTTPError, ValueError) as e:
            logger.warning("size_lookup_failed", cid=cid, error=str(e))
            return 0

    async def add(
        self, filename: str, data: IO[bytes], content_type: str
    ) -> dict[str, Any]:
        """Add a file to the daemon without pinning it.

        Returns:
            The daemon's ``{Name, Hash, Size}`` record

        Raises:
            DaemonError: If the daemon rejects the upload
        """
        response = await self._client.post(
            "/add",
            params={"pin": "false"},
            files={"file": (filename, data, content_type)},
            timeout=self.upload_timeout,
        )
        if response.status_code >= 400:
            raise DaemonError(
                f"add returned HTTP {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        lines = [line for line in response.text.splitlines() if line.strip()]
        if not lines:
            raise DaemonError("add returned an empty response")
        record = dict(json.loads(lines[-1]))
        if "Hash" not in record:
            raise DaemonError(f"add response has no Hash: {lines[-1]}")
        return record

    async def peer_count(self, timeout: float | None = None) -> int:
        """Number of connected swarm peers."""
        data = await self._rpc("/swarm/peers", timeout=timeout)
        return len(data.get("Peers") or [])

    async def health(self) -> dict[str, Any]:
        """Healthy when the node has at least one peer."""
        try:
            peers = await self.peer_count(timeout=5.0)
        except (DaemonError, httpx.HTTPError, ValueError) as e:
            return {"healthy": False, "peers": 0, "error": str(e)}
        return {"healthy": peers >= 1, "peers": peers}

    async def node_stats(self) -> dict[str, Any]:
        """Bandwidth, repository, identity and peer telemetry of the node."""
        bandwidth, repo, identity, peers = await asyncio.gather(
            self._rpc("/stats/bw", {"interval": "5m"}, timeout=5.0),
            self._rpc("/repo/stat", timeout=5.0),
            self._rpc("/id", timeout=5.0),
            self._rpc("/swarm/peers", timeout=5.0),
        )
        return {
            "bandwidth": {
                "total_in": bandwidth.get("TotalIn"),
                "total_out": bandwidth.get("TotalOut"),
                "rate_in": bandwidth.get("RateIn"),
                "rate_out": bandwidth.get("RateOut"),
            },
            "repository": {
                "size": repo.get("RepoSize"),
                "storage_max": repo.get("StorageMax"),
                "num_objects": repo.get("NumObjects"),
                "path": repo.get("RepoPath"),
                "version": repo.get("Version"),
            },
            "node": {
                "id": identity.get("ID"),
                "public_key": identity.get("PublicKey"),
                "agent_version": identity.get("AgentVersion"),
                "protocol_version": identity.get("ProtocolVersion"),
            },
            "peers": {"count": len(peers.get("Peers") or [])},
        }
