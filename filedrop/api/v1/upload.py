"""Anonymous file drop: direct uploads and server-side fetches of remote URLs."""

import asyncio
import mimetypes
import os
import re
import tempfile
import time
from typing import IO, Any
from urllib.parse import unquote, urlparse

import httpx
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette import status

from filedrop.api.v1.downloads import DownloadSlotsExhausted
from filedrop.core.config import format_bytes
from filedrop.core.events import AppState, get_app_state
from filedrop.core.logging import get_logger
from filedrop.pinning.daemon import DaemonError

logger = get_logger(__name__)

router = APIRouter(tags=["upload"])

DEFAULT_MIME_TYPE = "application/octet-stream"
CHUNK_SIZE = 64 * 1024

_DISPOSITION_FILENAME = re.compile(r"""filename[^;=\n]*=((['"]).*?\2|[^;\n]*)""")


class RemoteUploadRequest(BaseModel):
    """Body of a remote upload request."""

    url: str | None = None


class FileTooLarge(Exception):
    """Downloaded content exceeded the configured limit."""


def guess_mime_type(filename: str, declared: str | None = None) -> str:
    """Prefer an explicit content type, then the filename extension."""
    if declared:
        declared = declared.split(";")[0].strip()
        if declared:
            return declared
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or DEFAULT_MIME_TYPE


def filename_from_response(url: str, headers: httpx.Headers) -> str:
    """Name a downloaded file from Content-Disposition or the URL path."""
    disposition = headers.get("content-disposition")
    if disposition:
        match = _DISPOSITION_FILENAME.search(disposition)
        if match and match.group(1):
            name = match.group(1).replace('"', "").replace("'", "").strip()
            if name:
                return name
    return os.path.basename(unquote(urlparse(url).path)) or "download"


def _file_size(data: IO[bytes]) -> int:
    data.seek(0, os.SEEK_END)
    size = data.tell()
    data.seek(0)
    return size


async def _add_to_daemon(
    state: AppState, filename: str, data: IO[bytes], mime_type: str
) -> str:
    try:
        record = await state.daemon.add(filename, data, mime_type)
    except (DaemonError, httpx.HTTPError) as e:
        logger.error("daemon_add_failed", filename=filename, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to upload to IPFS",
        ) from e
    return str(record["Hash"])


@router.post("/upload")
async def upload_file(
    file: UploadFile | None = File(None),
    state: AppState = Depends(get_app_state),
) -> dict[str, Any]:
    """
    Add an uploaded file to the node without pinning it.

    Returns
    -------
        The content identifier, a gateway link and file metadata
    """
    if file is None or not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="No file uploaded"
        )

    limit = state.settings.file_limit_bytes
    size = _file_size(file.file)
    if size > limit:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File size exceeds limit of {format_bytes(limit)}",
        )

    mime_type = guess_mime_type(file.filename, file.content_type)
    started = time.monotonic()
    cid = await _add_to_daemon(state, file.filename, file.file, mime_type)
    logger.info(
        "file_uploaded",
        filename=file.filename,
        cid=cid,
        size=size,
        mime_type=mime_type,
        duration=round(time.monotonic() - started, 2),
    )

    return {
        "status": "success",
        "cid": cid,
        "url": state.gateways.build_url(cid, file.filename),
        "size": size,
        "type": mime_type,
        "filename": file.filename,
    }


async def download_to_file(
    client: httpx.AsyncClient, url: str, target: IO[bytes], limit: int
) -> tuple[int, httpx.Headers]:
    """Stream ``url`` into ``target``, refusing anything larger than ``limit``.

    Raises:
        FileTooLarge: If the declared or received size exceeds the limit
        httpx.HTTPStatusError: If the remote server answered with an error
    """
    async with client.stream("GET", url) as response:
        response.raise_for_status()

        declared = int(response.headers.get("content-length") or 0)
        if declared > limit:
            raise FileTooLarge(f"File size exceeds limit of {format_bytes(limit)}")

        received = 0
        async for chunk in response.aiter_bytes(CHUNK_SIZE):
            received += len(chunk)
            if received > limit:
                raise FileTooLarge(f"File size exceeds limit of {format_bytes(limit)}")
            target.write(chunk)

    target.seek(0)
    return received, response.headers


@router.post("/upload/remote", response_model=None)
async def upload_remote(
    body: RemoteUploadRequest,
    state: AppState = Depends(get_app_state),
) -> dict[str, Any] | JSONResponse:
    """
    Fetch a remote URL server-side and add it to the node.

    At most ``MAX_CONCURRENT_DOWNLOADS`` fetches run at once; further
    requests are rejected with 429 rather than queued.
    """
    try:
        with state.downloads.slot():
            return await _fetch_and_add(body, state)
    except DownloadSlotsExhausted as e:
        logger.warning(
            "remote_upload_rejected", active=e.active, max_concurrent=e.limit
        )
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "error": "Too many concurrent downloads",
                "message": f"Maximum {e.limit} concurrent downloads in progress. "
                "Please try again later.",
                "active_downloads": e.active,
                "max_concurrent": e.limit,
            },
        )


async def _fetch_and_add(body: RemoteUploadRequest, state: AppState) -> dict[str, Any]:
    if not body.url:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="No URL provided"
        )
    parsed = urlparse(body.url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only HTTP and HTTPS URLs are supported",
        )

    config = state.settings
    limit = config.remote_file_limit_bytes
    os.makedirs(config.UPLOAD_TEMP_DIR, exist_ok=True)
    logger.info("remote_download_started", url=body.url)

    with tempfile.TemporaryFile(dir=config.UPLOAD_TEMP_DIR) as target:
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(config.DOWNLOAD_TIMEOUT, connect=30.0),
                follow_redirects=True,
                max_redirects=5,
            ) as client:
                size, headers = await asyncio.wait_for(
                    download_to_file(client, body.url, target, limit),
                    timeout=config.DOWNLOAD_TIMEOUT,
                )
        except FileTooLarge as e:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=str(e)
            ) from e
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise HTTPException(
                status_code=status.HTTP_504_GATEWAY_TIMEOUT,
                detail="Timeout during download",
            ) from e
        except httpx.HTTPStatusError as e:
            raise HTTPException(
                status_code=e.response.status_code,
                detail=f"Remote server returned HTTP {e.response.status_code}",
            ) from e
        except httpx.HTTPError as e:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="Could not connect to the remote server",
            ) from e
        download_time = time.monotonic() - started

        filename = filename_from_response(body.url, headers)
        mime_type = guess_mime_type(filename, headers.get("content-type"))

        started = time.monotonic()
        cid = await _add_to_daemon(state, filename, target, mime_type)
        upload_time = time.monotonic() - started

    logger.info(
        "remote_upload_completed",
        url=body.url,
        cid=cid,
        size=size,
        download_seconds=round(download_time, 2),
        upload_seconds=round(upload_time, 2),
    )
    return {
        "status": "success",
        "cid": cid,
        "url": state.gateways.build_url(cid, filename),
        "filename": filename,
        "size": size,
        "type": mime_type,
        "source_url": body.url,
        "timing": {
            "download_ms": int(download_time * 1000),
            "upload_ms": int(upload_time * 1000),
        },
    }
