#!/usr/bin/env python3
"""
Scratch file handling for uploaded torrents.

An uploaded file is written to a uniquely named scratch path, handed to the
caller, and removed when the caller is done, whatever the outcome.
"""

import logging
import os
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Union

import aiofiles
from starlette.datastructures import FormData, UploadFile
from starlette.formparsers import MultiPartException, MultiPartParser
from starlette.requests import Request

from relay_errors import BadRequestError, PayloadTooLargeError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB
# Room for boundaries, part headers and small fields around the file
MULTIPART_OVERHEAD = 64 * 1024


@dataclass
class UploadJob:
    """An uploaded file persisted for the duration of one request"""
    file_path: Path
    file_size_bytes: int
    size_limit_bytes: int

    async def read_bytes(self) -> bytes:
        async with aiofiles.open(self.file_path, "rb") as f:
            return await f.read()


def scratch_path_for(upload_dir: Union[str, Path], original_name: str) -> Path:
    """Unique scratch path that keeps the upload's extension"""
    suffix = Path(original_name or "").suffix[:16]
    unique = f"{int(time.time() * 1000)}-{secrets.token_hex(6)}"
    return Path(upload_dir) / f"torrent-{unique}{suffix}"


def release_scratch_file(path: Union[str, Path]) -> None:
    """Remove a scratch file; a file that is already gone is not an error"""
    try:
        os.remove(path)
        logger.debug(f"Deleted temporary file: {path}")
    except FileNotFoundError:
        logger.debug(f"Temporary file {path} was already deleted or never existed")
    except OSError as e:
        logger.error(f"Failed to delete temporary file {path}: {e}")


@asynccontextmanager
async def scratch_upload(upload: UploadFile, upload_dir: Union[str, Path],
                         size_limit: int = DEFAULT_MAX_FILE_SIZE) -> AsyncIterator[UploadJob]:
    """
    Persist ``upload`` to a scratch file for the duration of the block.

    The file is removed on every exit path, including a size-limit abort
    halfway through writing and any exception raised inside the block.

    Raises:
        PayloadTooLargeError: The upload exceeds ``size_limit`` bytes
    """
    path = scratch_path_for(upload_dir, upload.filename or "")
    size = 0
    try:
        async with aiofiles.open(path, "wb") as out:
            while True:
                chunk = await upload.read(CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                if size > size_limit:
                    logger.warning(f"Upload {upload.filename!r} exceeds {size_limit} bytes")
                    raise PayloadTooLargeError(
                        f"File too large (limit {size_limit} bytes)",
                        details={"limit": size_limit},
                    )
                await out.write(chunk)

        logger.debug(f"Stored upload {upload.filename!r} at {path} ({size} bytes)")
        yield UploadJob(file_path=path, file_size_bytes=size, size_limit_bytes=size_limit)
    finally:
        release_scratch_file(path)


class BodyLimitExceeded(MultiPartException):
    """Request body grew past the allowed size while being parsed"""


async def limited_stream(stream: AsyncIterator[bytes], limit: int) -> AsyncIterator[bytes]:
    """Pass ``stream`` through, failing once more than ``limit`` bytes arrived"""
    received = 0
    async for chunk in stream:
        received += len(chunk)
        if received > limit:
            raise BodyLimitExceeded(f"Request body exceeds {limit} bytes")
        yield chunk


async def receive_upload_form(request: Request, size_limit: int = DEFAULT_MAX_FILE_SIZE,
                              max_fields: int = 10) -> FormData:
    """
    Parse a multipart upload without buffering more than the size limit.

    A declared Content-Length over the limit is refused before any of the
    body is read. Otherwise the body is counted while it streams into the
    parser, so an oversized upload stops shortly after crossing the limit.
    The caller owns the returned form and must close it.

    Raises:
        BadRequestError: The body is not a well-formed multipart form
        PayloadTooLargeError: The body exceeds ``size_limit`` plus framing
    """
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith("multipart/form-data"):
        logger.error(f"Upload failed: unexpected content type {content_type!r}")
        raise BadRequestError("No torrent file uploaded.")

    body_limit = size_limit + MULTIPART_OVERHEAD
    too_large = PayloadTooLargeError(
        f"File too large (limit {size_limit} bytes)",
        details={"limit": size_limit},
    )

    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > body_limit:
        logger.warning(f"Rejecting upload with Content-Length {declared} (limit {size_limit} bytes)")
        raise too_large

    parser = MultiPartParser(
        request.headers,
        limited_stream(request.stream(), body_limit),
        max_files=1,
        max_fields=max_fields,
    )
    try:
        return await parser.parse()
    except BodyLimitExceeded:
        logger.warning(f"Upload body exceeded {body_limit} bytes while streaming")
        raise too_large
    except MultiPartException as e:
        logger.error(f"Upload failed: malformed multipart body: {e.message}")
        raise BadRequestError("Malformed upload.", details=e.message)
