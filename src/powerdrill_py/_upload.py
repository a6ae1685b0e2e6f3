"""Chunked multipart upload of a local file into a dataset data source."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TYPE_CHECKING

import httpx
from pydantic import BaseModel, Field, ValidationError

from powerdrill_py.client import PowerdrillAPIError, response_data

if TYPE_CHECKING:
    from powerdrill_py.client import PowerdrillClient

_log = logging.getLogger("powerdrill-mcp")

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024
DEFAULT_POLL_INTERVAL_MS = 3000
DEFAULT_POLL_MAX_ATTEMPTS = 20

STATUS_SYNCHED = "synched"
STATUS_INVALID = "invalid"

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class UploadError(Exception):
    """Base class for every failure of the upload workflow."""

    error_type = "UploadFailed"
    # set when the failure leaves an already-created dataset behind
    dataset_id: str | None = None


class UploadFileNotFoundError(UploadError, FileNotFoundError):
    error_type = "FileNotFound"


class UploadInitiationError(UploadError):
    error_type = "UploadInitiationFailed"


class UploadPartError(UploadError):
    error_type = "UploadPartFailed"

    def __init__(self, part_number: int, message: str) -> None:
        super().__init__(f"Upload of part {part_number} failed: {message}")
        self.part_number = part_number


class UploadCompletionError(UploadError):
    error_type = "UploadCompletionFailed"


class DataSourceCreationError(UploadError):
    error_type = "DataSourceCreationFailed"


class DataSourceProcessingError(UploadError):
    error_type = "DataSourceProcessingFailed"


class DataSourceSyncTimeoutError(UploadError):
    error_type = "DataSourceSyncTimeout"


# ---------------------------------------------------------------------------
# Upload models
# ---------------------------------------------------------------------------


class PartDescriptor(BaseModel):
    """One server-issued part: its number, byte size and signed PUT URL."""

    number: int = Field(gt=0)
    size: int = Field(gt=0)
    upload_url: str


class PartResult(BaseModel):
    number: int
    etag: str


class UploadSession(BaseModel):
    upload_id: str
    file_object_key: str
    part_items: list[PartDescriptor]


# ---------------------------------------------------------------------------
# Byte range math + local file reader
# ---------------------------------------------------------------------------


def part_byte_range(
    part_number: int,
    part_size: int,
    chunk_size: int,
    file_size: int,
) -> tuple[int, int]:
    """Return the inclusive ``(start, end)`` offsets of a part."""
    start = (part_number - 1) * chunk_size
    end = min(start + part_size - 1, file_size - 1)
    return start, end


def check_part_layout(
    parts: list[PartDescriptor],
    chunk_size: int,
    file_size: int,
) -> None:
    """Ensure *parts* (sorted by number) tile ``[0, file_size)`` exactly.

    Raises ``ValueError`` describing the first gap, overlap or size mismatch.
    """
    expected_start = 0
    for index, part in enumerate(parts, start=1):
        if part.number != index:
            raise ValueError(
                f"part numbers must be contiguous from 1, got {part.number} at position {index}"
            )
        start, end = part_byte_range(part.number, part.size, chunk_size, file_size)
        if start != expected_start or end != start + part.size - 1:
            raise ValueError(
                f"part {part.number} (size {part.size}) does not match "
                f"chunk_size={chunk_size} for a {file_size}-byte file"
            )
        expected_start = end + 1
    if expected_start != file_size:
        raise ValueError(
            f"parts cover {expected_start} bytes but the file has {file_size}"
        )


def read_byte_range(path: Path, start: int, end: int) -> bytes:
    """Read the inclusive byte range ``[start, end]`` of *path*."""
    length = end - start + 1
    with path.open("rb") as f:
        f.seek(start)
        data = f.read(length)
    if len(data) != length:
        raise OSError(f"short read: wanted {length} bytes at offset {start}, got {len(data)}")
    return data


def strip_etag(raw: str) -> str:
    """Drop a weak-validator prefix and surrounding quotes."""
    etag = raw.strip()
    if etag.startswith("W/"):
        etag = etag[2:]
    return etag.strip('"')


# ---------------------------------------------------------------------------
# Workflow steps
# ---------------------------------------------------------------------------


async def _initiate(
    client: PowerdrillClient,
    file_name: str,
    file_size: int,
    chunk_size: int,
) -> UploadSession:
    try:
        payload = await client.init_multipart_upload(file_name, file_size)
        data = response_data(payload, "upload_id", "file_object_key", "part_items")
        session = UploadSession.model_validate(data)
    except (PowerdrillAPIError, httpx.HTTPError, ValidationError) as exc:
        raise UploadInitiationError(f"Failed to initiate upload: {exc}") from exc

    session.part_items.sort(key=lambda part: part.number)
    try:
        check_part_layout(session.part_items, chunk_size, file_size)
    except ValueError as exc:
        raise UploadInitiationError(f"Server part layout rejected: {exc}") from exc
    return session


async def _upload_parts(
    client: PowerdrillClient,
    path: Path,
    session: UploadSession,
    chunk_size: int,
    file_size: int,
) -> list[PartResult]:
    results: list[PartResult] = []
    for part in session.part_items:
        start, end = part_byte_range(part.number, part.size, chunk_size, file_size)
        try:
            chunk = await asyncio.to_thread(read_byte_range, path, start, end)
            raw_etag = await client.upload_part(part.upload_url, chunk)
        except (PowerdrillAPIError, httpx.HTTPError, OSError) as exc:
            raise UploadPartError(part.number, str(exc)) from exc

        results.append(PartResult(number=part.number, etag=strip_etag(raw_etag)))
        _log.debug(
            "upload part=%d/%d bytes=%d-%d",
            part.number, len(session.part_items), start, end,
        )
    return results


async def _complete(
    client: PowerdrillClient,
    session: UploadSession,
    results: list[PartResult],
) -> str:
    part_etags = [r.model_dump() for r in sorted(results, key=lambda r: r.number)]
    try:
        payload = await client.complete_multipart_upload(
            session.file_object_key, session.upload_id, part_etags
        )
        data = response_data(payload, "file_object_key")
    except (PowerdrillAPIError, httpx.HTTPError) as exc:
        raise UploadCompletionError(f"Failed to complete upload: {exc}") from exc
    return data["file_object_key"]


async def _create_data_source(
    client: PowerdrillClient,
    dataset_id: str,
    file_name: str,
    file_object_key: str,
) -> dict[str, Any]:
    try:
        payload = await client.create_data_source(
            dataset_id, file_name, file_object_key=file_object_key, source_type="FILE"
        )
        return response_data(payload, "id")
    except (PowerdrillAPIError, httpx.HTTPError) as exc:
        raise DataSourceCreationError(f"Failed to create data source: {exc}") from exc


async def wait_for_data_source(
    client: PowerdrillClient,
    dataset_id: str,
    data_source_id: str,
    *,
    interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> dict[str, Any]:
    """Poll a data source until it is ``synched``.

    ``invalid`` is terminal and raises :class:`DataSourceProcessingError` at
    once; any other status is retried every *interval_ms* up to
    *max_attempts* times before :class:`DataSourceSyncTimeoutError`.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            payload = await client.get_data_source(dataset_id, data_source_id)
            record = response_data(payload, "status")
        except (PowerdrillAPIError, httpx.HTTPError) as exc:
            raise DataSourceProcessingError(
                f"Failed to check status of data source {data_source_id}: {exc}"
            ) from exc

        status = record["status"]
        _log.info(
            "poll data_source=%s attempt=%d/%d status=%s",
            data_source_id, attempt, max_attempts, status,
        )
        if status == STATUS_SYNCHED:
            return record
        if status == STATUS_INVALID:
            raise DataSourceProcessingError(
                f"Data source {data_source_id} failed processing (status=invalid)."
            )
        if attempt < max_attempts:
            await sleep(interval_ms / 1000)

    raise DataSourceSyncTimeoutError(
        f"Data source {data_source_id} did not sync after {max_attempts} attempts "
        f"(waited {(max_attempts - 1) * interval_ms} ms)."
    )


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


async def upload_file_as_data_source(
    client: PowerdrillClient,
    dataset_id: str,
    file_path: str | Path,
    *,
    file_name: str | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    poll_max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> dict[str, Any]:
    """Upload *file_path* into *dataset_id* and wait until it is usable.

    Steps run strictly in sequence: initiate, PUT every part in ascending
    part order, complete, create the ``FILE`` data source, then poll its
    status. Any failure raises the matching :class:`UploadError` subclass;
    nothing is retried, so a caller retries by calling again.

    Returns ``{dataset_id, data_source: {...}, file: {...}}``.
    """
    if not dataset_id or not dataset_id.strip():
        raise ValueError("dataset_id must be a non-empty string.")
    if isinstance(chunk_size, bool) or not isinstance(chunk_size, int) or chunk_size <= 0:
        raise ValueError(f"chunk_size must be a positive integer, got {chunk_size!r}.")

    path = Path(file_path).expanduser()
    if not path.is_file():
        raise UploadFileNotFoundError(f"File not found: {file_path}")
    file_size = path.stat().st_size
    file_name = file_name or path.name

    session = await _initiate(client, file_name, file_size, chunk_size)
    _log.info(
        "upload initiated file=%s size=%d parts=%d upload_id=%s",
        file_name, file_size, len(session.part_items), session.upload_id,
    )

    results = await _upload_parts(client, path, session, chunk_size, file_size)
    object_key = await _complete(client, session, results)
    _log.info("upload completed file=%s object_key=%s", file_name, object_key)

    created = await _create_data_source(client, dataset_id, file_name, object_key)
    data_source_id = str(created["id"])
    _log.info("data source created dataset=%s data_source=%s", dataset_id, data_source_id)

    record = await wait_for_data_source(
        client,
        dataset_id,
        data_source_id,
        interval_ms=poll_interval_ms,
        max_attempts=poll_max_attempts,
        sleep=sleep,
    )

    return {
        "dataset_id": dataset_id,
        "data_source": {
            "id": data_source_id,
            "name": record.get("name", file_name),
            "type": record.get("type", "FILE"),
            "status": record["status"],
            "size": record.get("size", file_size),
        },
        "file": {
            "name": file_name,
            "size": file_size,
            "object_key": object_key,
        },
    }
