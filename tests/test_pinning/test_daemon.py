"""Tests for the IPFS daemon RPC client."""

import io
import json
from collections.abc import AsyncGenerator, Iterator
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx
from httpx import Response

from filedrop.pinning.daemon import DaemonError, IpfsClient
from tests.fixtures.pipeline import CID_A

API = "http://127.0.0.1:5001/api/v0"


def ndjson(*records: dict[str, object]) -> bytes:
    return b"".join(json.dumps(record).encode() + b"\n" for record in records)


@pytest.fixture
async def client() -> AsyncGenerator[IpfsClient, None]:
    """Daemon client pointed at the default local API."""
    ipfs = IpfsClient("http://127.0.0.1:5001/", timeout=2)
    yield ipfs
    await ipfs.aclose()


@pytest.fixture(autouse=True)
def no_retry_sleep() -> Iterator[None]:
    """Skip the backoff delay between retried daemon calls."""
    with patch("filedrop.pinning.retry.asyncio.sleep", new=AsyncMock()):
        yield


@pytest.mark.asyncio
async def test_is_pinned_true(client: IpfsClient) -> None:
    """Test a recursive pin listing is reported as present."""
    with respx.mock:
        route = respx.post(f"{API}/pin/ls").mock(
            return_value=Response(200, json={"Keys": {CID_A: {"Type": "recursive"}}})
        )

        assert await client.is_pinned(CID_A)
        assert route.calls.last.request.url.params["arg"] == CID_A
        assert route.calls.last.request.url.params["type"] == "recursive"


@pytest.mark.asyncio
async def test_is_pinned_false_on_daemon_error(client: IpfsClient) -> None:
    """Test a rejected pin listing means not pinned."""
    with respx.mock:
        respx.post(f"{API}/pin/ls").mock(
            return_value=Response(500, json={"Message": "not pinned", "Type": "error"})
        )

        assert not await client.is_pinned(CID_A)


@pytest.mark.asyncio
async def test_is_pinned_retries_transport_errors(client: IpfsClient) -> None:
    """Test transient connection errors are retried before answering."""
    with respx.mock:
        route = respx.post(f"{API}/pin/ls").mock(
            side_effect=[
                httpx.ConnectError("refused"),
                Response(200, json={"Keys": {CID_A: {}}}),
            ]
        )

        assert await client.is_pinned(CID_A)
        assert route.call_count == 2


@pytest.mark.asyncio
async def test_is_pinned_false_when_unreachable(client: IpfsClient) -> None:
    """Test an unreachable daemon is treated as not pinned."""
    with respx.mock:
        route = respx.post(f"{API}/pin/ls").mock(side_effect=httpx.ConnectError("down"))

        assert not await client.is_pinned(CID_A)
        assert route.call_count == 3


@pytest.mark.asyncio
async def test_pin_streams_progress(client: IpfsClient) -> None:
    """Test progress lines are forwarded and the final record returned."""
    progress: list[int] = []
    with respx.mock:
        route = respx.post(f"{API}/pin/add").mock(
            return_value=Response(
                200,
                content=ndjson({"Progress": 10}, {"Progress": 25}, {"Pins": [CID_A]}),
            )
        )

        result = await client.pin(CID_A, progress.append)

    assert result == {"Pins": [CID_A]}
    assert progress == [10, 25]
    params = route.calls.last.request.url.params
    assert params["recursive"] == "true"
    assert params["progress"] == "true"


@pytest.mark.asyncio
async def test_pin_error_line_raises(client: IpfsClient) -> None:
    """Test an error record in the stream is an explicit rejection."""
    with respx.mock:
        respx.post(f"{API}/pin/add").mock(
            return_value=Response(
                200,
                content=ndjson({"Progress": 1}, {"Type": "error", "Message": "bad cid"}),
            )
        )

        with pytest.raises(DaemonError, match="bad cid"):
            await client.pin(CID_A)


@pytest.mark.asyncio
async def test_pin_http_error_raises(client: IpfsClient) -> None:
    """Test an HTTP error status is an explicit rejection."""
    with respx.mock:
        respx.post(f"{API}/pin/add").mock(return_value=Response(500, text="invalid path"))

        with pytest.raises(DaemonError) as exc_info:
            await client.pin(CID_A)

    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
async def test_pin_timeout_propagates(client: IpfsClient) -> None:
    """Test a timeout is not disguised as a rejection."""
    with respx.mock:
        respx.post(f"{API}/pin/add").mock(side_effect=httpx.ReadTimeout("slow"))

        with pytest.raises(httpx.ReadTimeout):
            await client.pin(CID_A)


@pytest.mark.asyncio
async def test_cache_counts_bytes(client: IpfsClient) -> None:
    """Test caching reads the block and reports its size."""
    with respx.mock:
        respx.post(f"{API}/block/get").mock(return_value=Response(200, content=b"x" * 1500))

        assert await client.cache(CID_A) == 1500


@pytest.mark.asyncio
async def test_cache_reports_progress_periodically() -> None:
    """Test progress is reported once the report interval has elapsed."""
    ticks = iter([0.0, 10.0, 10.5, 21.0, 21.5, 30.0])
    ipfs = IpfsClient(clock=lambda: next(ticks))
    progress: list[int] = []

    async def stream() -> AsyncGenerator[bytes, None]:
        for _ in range(4):
            yield b"y" * 100

    with respx.mock:
        respx.post(f"{API}/block/get").mock(return_value=Response(200, content=stream()))
        size = await ipfs.cache(CID_A, progress.append)
    await ipfs.aclose()

    assert size == 400
    assert progress == [100, 300]


@pytest.mark.asyncio
async def test_get_size_prefers_cumulative_size(client: IpfsClient) -> None:
    """Test the DAG size is used when available."""
    with respx.mock:
        route = respx.post(f"{API}/files/stat").mock(
            return_value=Response(200, json={"CumulativeSize": 2048, "Size": 1000})
        )

        assert await client.get_size(CID_A) == 2048
        assert route.calls.last.request.url.params["arg"] == f"/ipfs/{CID_A}"


@pytest.mark.asyncio
async def test_get_size_falls_back_to_block_stat(client: IpfsClient) -> None:
    """Test the root block size is used when the DAG stat fails."""
    with respx.mock:
        respx.post(f"{API}/files/stat").mock(return_value=Response(500, text="no"))
        respx.post(f"{API}/block/stat").mock(
            return_value=Response(200, json={"Key": CID_A, "Size": 262})
        )

        assert await client.get_size(CID_A) == 262


@pytest.mark.asyncio
async def test_get_size_zero_when_unknown(client: IpfsClient) -> None:
    """Test an unknown size is reported as zero."""
    with respx.mock:
        respx.post(f"{API}/files/stat").mock(return_value=Response(500))
        respx.post(f"{API}/block/stat").mock(return_value=Response(500))

        assert await client.get_size(CID_A) == 0


@pytest.mark.asyncio
async def test_add_does_not_pin(client: IpfsClient) -> None:
    """Test uploads are added unpinned and the final record is returned."""
    with respx.mock:
        route = respx.post(f"{API}/add").mock(
            return_value=Response(
                200, content=ndjson({"Name": "a.txt", "Hash": CID_A, "Size": "13"})
            )
        )

        record = await client.add("a.txt", io.BytesIO(b"hello, world!"), "text/plain")

    assert record["Hash"] == CID_A
    request = route.calls.last.request
    assert request.url.params["pin"] == "false"
    assert request.headers["content-type"].startswith("multipart/form-data")


@pytest.mark.asyncio
async def test_add_without_hash_raises(client: IpfsClient) -> None:
    """Test a response without a hash is rejected."""
    with respx.mock:
        respx.post(f"{API}/add").mock(return_value=Response(200, content=b"\n"))

        with pytest.raises(DaemonError):
            await client.add("a.txt", io.BytesIO(b"x"), "text/plain")


@pytest.mark.asyncio
async def test_health_with_peers(client: IpfsClient) -> None:
    """Test the node is healthy with at least one peer."""
    with respx.mock:
        respx.post(f"{API}/swarm/peers").mock(
            return_value=Response(200, json={"Peers": [{"Peer": "a"}, {"Peer": "b"}]})
        )

        assert await client.health() == {"healthy": True, "peers": 2}


@pytest.mark.asyncio
async def test_health_without_peers(client: IpfsClient) -> None:
    """Test an isolated node is unhealthy."""
    with respx.mock:
        respx.post(f"{API}/swarm/peers").mock(return_value=Response(200, json={"Peers": None}))

        assert await client.health() == {"healthy": False, "peers": 0}


@pytest.mark.asyncio
async def test_health_when_unreachable(client: IpfsClient) -> None:
    """Test an unreachable daemon is unhealthy with an error."""
    with respx.mock:
        respx.post(f"{API}/swarm/peers").mock(side_effect=httpx.ConnectError("down"))

        result = await client.health()

    assert result["healthy"] is False
    assert "down" in result["error"]


@pytest.mark.asyncio
async def test_node_stats(client: IpfsClient) -> None:
    """Test telemetry is gathered from the four status calls."""
    with respx.mock:
        respx.post(f"{API}/stats/bw").mock(
            return_value=Response(200, json={"TotalIn": 1, "TotalOut": 2, "RateIn": 0.5, "RateOut": 1.5})
        )
        respx.post(f"{API}/repo/stat").mock(
            return_value=Response(200, json={"RepoSize": 4096, "StorageMax": 8192, "NumObjects": 7})
        )
        respx.post(f"{API}/id").mock(
            return_value=Response(200, json={"ID": "12D3Koo", "AgentVersion": "kubo/0.29.0"})
        )
        respx.post(f"{API}/swarm/peers").mock(
            return_value=Response(200, json={"Peers": [{}, {}, {}]})
        )

        stats = await client.node_stats()

    assert stats["bandwidth"]["total_in"] == 1
    assert stats["repository"]["num_objects"] == 7
    assert stats["node"]["id"] == "12D3Koo"
    assert stats["peers"] == {"count": 3}
