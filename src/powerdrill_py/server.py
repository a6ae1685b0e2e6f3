"""MCP server exposing Powerdrill dataset operations as tools.

Architecture
------------
LLM client ──STDIO──▶ server.py (FastMCP) ──▶ PowerdrillClient ──▶ Powerdrill API

Design:
  • Progressive disclosure – list tools accept ``response_mode``
    (compact / standard / full) so the LLM controls token budget.
  • Structured errors – ToolError payloads carry ``error_type`` and
    ``hints[]`` so the LLM gets actionable recovery steps.  Upload
    failures keep their own error types (``UploadPartFailed``, …).
  • Structured logging – JSON lines on *stderr* (stdout is the STDIO
    transport).  Logs tool name, duration and status.
  • Local file upload – chunked multipart upload followed by status
    polling until the new data source is synched.
"""

from __future__ import annotations

import functools
import json
import logging
import os
import sys
import time
from typing import Any, Literal

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from powerdrill_py.client import (
    PowerdrillAPIError,
    PowerdrillClient,
    connect,
    response_data,
)
from powerdrill_py._upload import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_POLL_MAX_ATTEMPTS,
    UploadError,
    UploadFileNotFoundError,
    UploadPartError,
    upload_file_as_data_source,
)

# ---------------------------------------------------------------------------
# Configuration (overridable via POWERDRILL_MCP_* env vars)
# ---------------------------------------------------------------------------


def _env_int(key: str, default: int) -> int:
    val = os.environ.get(key)
    if val is None:
        return default
    try:
        return int(val)
    except (ValueError, TypeError):
        return default


POLL_INTERVAL_MS: int = _env_int("POWERDRILL_MCP_POLL_INTERVAL_MS", DEFAULT_POLL_INTERVAL_MS)
POLL_MAX_ATTEMPTS: int = _env_int("POWERDRILL_MCP_POLL_MAX_ATTEMPTS", DEFAULT_POLL_MAX_ATTEMPTS)

# ---------------------------------------------------------------------------
# Logging  (stderr — stdout is the STDIO transport)
# ---------------------------------------------------------------------------

_log = logging.getLogger("powerdrill-mcp")
_handler = logging.StreamHandler(sys.stderr)
_handler.setFormatter(
    logging.Formatter(
        '{"ts":"%(asctime)s","level":"%(levelname)s","msg":"%(message)s"}'
    )
)
_log.addHandler(_handler)
_log.setLevel(os.environ.get("POWERDRILL_MCP_LOG_LEVEL", "INFO").upper())

# ---------------------------------------------------------------------------
# Progressive-disclosure field sets
# ---------------------------------------------------------------------------

ResponseMode = Literal["compact", "standard", "full"]

OutputLanguage = Literal[
    "AUTO", "EN", "ES", "AR", "PT", "ID", "JA", "RU", "HI", "FR", "DE",
    "VI", "TR", "PL", "IT", "KO", "ZH-CN", "ZH-TW",
]
JobMode = Literal["AUTO", "DATA_ANALYTICS"]
AgentId = Literal["DATA_ANALYSIS_AGENT"]

_COMPACT: dict[str, list[str]] = {
    "dataset": ["id", "name"],
    "data_source": ["id", "name", "status"],
    "session": ["id", "name"],
}

_STANDARD: dict[str, list[str]] = {
    "dataset": ["id", "name", "description"],
    "data_source": ["id", "name", "type", "status", "size", "dataset_id"],
    "session": [
        "id", "name", "output_language", "job_mode",
        "max_contextual_job_history", "agent_id",
    ],
}

# ---------------------------------------------------------------------------
# Server + lazy state
# ---------------------------------------------------------------------------

mcp = FastMCP("powerdrill-mcp")

_client: PowerdrillClient | None = None


def _get_client() -> PowerdrillClient:
    global _client
    if _client is None:
        _client = connect()
        _log.info("connected api_url=%s", _client.config.api_url)
    return _client


# ---------------------------------------------------------------------------
# Internal helpers — progressive disclosure
# ---------------------------------------------------------------------------


def _pick(records: list[dict], fields: list[str]) -> list[dict]:
    """Extract *fields* from each record, skipping missing keys."""
    return [{k: r[k] for k in fields if k in r} for r in records]


def _select(records: list[dict], resource: str, mode: ResponseMode) -> list[dict]:
    if mode == "compact":
        return _pick(records, _COMPACT.get(resource, []))
    if mode == "standard":
        return _pick(records, _STANDARD.get(resource, []))
    return records


def _format_page(
    data: dict[str, Any],
    records: list[dict],
    resource: str,
    key: str,
    mode: ResponseMode,
) -> str:
    """Apply progressive disclosure to one page of API records."""
    out: dict[str, Any] = {
        "count": len(records),
        "total": data.get("total_items", len(records)),
        "page_number": data.get("page_number", 1),
        "page_size": data.get("page_size", len(records)),
        "response_mode": mode,
        key: _select(records, resource, mode),
    }
    if mode != "full":
        out["hint"] = "Set response_mode='full' to see all fields."
    return json.dumps(out, indent=2, default=str)


def _validate_page(page_number: int | None, page_size: int | None) -> None:
    if page_number is not None and page_number < 1:
        raise ValueError(f"page_number must be >= 1, got {page_number}.")
    if page_size is not None and page_size < 1:
        raise ValueError(f"page_size must be >= 1, got {page_size}.")


# ---------------------------------------------------------------------------
# Error handling (structured, with hints)
# ---------------------------------------------------------------------------

_UPLOAD_HINTS: dict[str, list[str]] = {
    "FileNotFound": [
        "Pass an absolute path to an existing, readable local file.",
    ],
    "UploadInitiationFailed": [
        "Check file_name and that the file is not empty.",
        "If the part layout was rejected, retry with the default chunk_size.",
    ],
    "UploadPartFailed": [
        "Parts are not retried individually — call the tool again to "
        "restart the whole upload.",
    ],
    "UploadCompletionFailed": [
        "Call the tool again to restart the whole upload.",
    ],
    "DataSourceCreationFailed": [
        "Verify dataset_id with powerdrill_list_datasets.",
    ],
    "DataSourceProcessingFailed": [
        "Powerdrill could not process the file. Check the file format "
        "(CSV, XLSX, PDF, …) and content.",
    ],
    "DataSourceSyncTimeout": [
        "The file may still be processing — check its status with "
        "powerdrill_list_data_sources before uploading again.",
    ],
}


def _exception_to_tool_error(tool_name: str, exc: Exception) -> ToolError:
    """Map exception to structured ToolError with hints."""
    if isinstance(exc, KeyError):
        _log.warning("tool=%s error=missing_env key=%s", tool_name, exc)
        return ToolError(
            json.dumps({
                "error": f"Missing environment variable: {exc}",
                "error_type": "configuration",
                "hints": [
                    "Set POWERDRILL_USER_ID and POWERDRILL_PROJECT_API_KEY.",
                    "Optionally set POWERDRILL_API_URL to target another region.",
                ],
            })
        )

    if isinstance(exc, UploadError):
        _log.warning(
            "tool=%s error=%s msg=%s", tool_name, exc.error_type, exc,
        )
        payload: dict[str, Any] = {
            "error": str(exc),
            "error_type": exc.error_type,
            "hints": _UPLOAD_HINTS.get(exc.error_type, []),
        }
        if isinstance(exc, UploadPartError):
            payload["part_number"] = exc.part_number
        if exc.dataset_id:
            payload["dataset_id"] = exc.dataset_id
            payload["hints"] = [
                f"Dataset {exc.dataset_id} was created; retry with "
                f"powerdrill_create_data_source_from_local_file(dataset_id='{exc.dataset_id}') "
                "instead of creating another dataset.",
                *payload["hints"],
            ]
        return ToolError(json.dumps(payload))

    if isinstance(exc, ValueError):
        _log.warning("tool=%s error=validation msg=%s", tool_name, exc)
        return ToolError(
            json.dumps({
                "error": str(exc),
                "error_type": "validation",
                "hints": [
                    "Check parameter values and try again.",
                ],
            })
        )

    status_code = exc.status_code if isinstance(exc, PowerdrillAPIError) else None
    _log.error("tool=%s error=api status=%s msg=%s", tool_name, status_code, exc)
    hints = [
        "This may be transient — retry once.",
        "If the error mentions a dataset or data source ID, verify it "
        "exists with the corresponding list tool.",
    ]
    if status_code in (401, 403):
        hints = ["Check POWERDRILL_USER_ID and POWERDRILL_PROJECT_API_KEY."]
    return ToolError(
        json.dumps({
            "error": f"Powerdrill API error: {exc}",
            "error_type": "api_error",
            "status_code": status_code,
            "hints": hints,
        })
    )


def _handle_errors(fn):
    """Decorator: catch exceptions → structured ToolError with hints."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        t0 = time.monotonic()
        try:
            result = await fn(*args, **kwargs)
            _log.info(
                "tool=%s status=ok duration_ms=%.0f",
                fn.__name__, (time.monotonic() - t0) * 1000,
            )
            return result
        except ToolError:
            raise
        except Exception as exc:
            raise _exception_to_tool_error(fn.__name__, exc) from exc

    return wrapper


# ===================================================================
# Tools — Datasets
# ===================================================================


@mcp.tool()
@_handle_errors
async def powerdrill_list_datasets(
    limit: int | None = None,
    page_number: int | None = None,
    page_size: int | None = None,
    search: str | None = None,
    response_mode: ResponseMode = "standard",
) -> str:
    """List datasets in the Powerdrill project.

    Start here to discover dataset IDs, then use
    powerdrill_get_dataset_overview or powerdrill_list_data_sources.

    Args:
        limit: Maximum number of datasets to return from this page
        page_number: Page to fetch (default: 1)
        page_size: Items per page (default: 10)
        search: Filter datasets by name
        response_mode: 'compact' (id+name), 'standard' (adds description),
                       or 'full' (raw API records).  Default: standard.
    """
    _validate_page(page_number, page_size)
    client = _get_client()
    data = response_data(
        await client.list_datasets(page_number, page_size, search), "records"
    )
    records = data["records"]
    if limit and limit > 0:
        records = records[:limit]
    _log.info("list_datasets count=%d mode=%s", len(records), response_mode)
    return _format_page(data, records, "dataset", "datasets", response_mode)


@mcp.tool()
@_handle_errors
async def powerdrill_get_dataset_overview(dataset_id: str) -> str:
    """Get overview information about one dataset.

    Includes description, summary, suggested exploration questions and
    keywords — useful for choosing what to ask powerdrill_create_job.

    Args:
        dataset_id: ID of the dataset (see powerdrill_list_datasets)
    """
    if not dataset_id:
        raise ValueError("dataset_id must be a non-empty string.")
    client = _get_client()
    data = response_data(await client.get_dataset_overview(dataset_id))
    return json.dumps({
        "id": data.get("id"),
        "name": data.get("name"),
        "description": data.get("description"),
        "summary": data.get("summary"),
        "exploration_questions": data.get("exploration_questions"),
        "keywords": data.get("keywords"),
    }, indent=2, default=str)


@mcp.tool()
@_handle_errors
async def powerdrill_create_dataset(name: str, description: str | None = None) -> str:
    """Create a new, empty dataset.

    Add files to it afterwards with
    powerdrill_create_data_source_from_local_file.

    Args:
        name: Dataset name
        description: Optional dataset description
    """
    if not name or not name.strip():
        raise ValueError("name must be a non-empty string.")
    client = _get_client()
    data = response_data(await client.create_dataset(name, description), "id")
    _log.info("create_dataset id=%s", data["id"])
    return json.dumps({"dataset_id": data["id"], "name": name}, indent=2)


# ===================================================================
# Tools — Data sources
# ===================================================================


@mcp.tool()
@_handle_errors
async def powerdrill_list_data_sources(
    dataset_id: str,
    page_number: int | None = None,
    page_size: int | None = None,
    status: str | None = None,
    response_mode: ResponseMode = "standard",
) -> str:
    """List data sources (files, connections) of one dataset.

    Args:
        dataset_id: ID of the dataset
        page_number: Page to fetch (default: 1)
        page_size: Items per page (default: 10)
        status: Filter by status: synching, invalid, synched
                (comma-separated for multiple)
        response_mode: 'compact', 'standard', or 'full'.  Default: standard.
    """
    if not dataset_id:
        raise ValueError("dataset_id must be a non-empty string.")
    _validate_page(page_number, page_size)
    client = _get_client()
    data = response_data(
        await client.list_data_sources(dataset_id, page_number, page_size, status),
        "records",
    )
    records = data["records"]
    _log.info("list_data_sources dataset=%s count=%d", dataset_id, len(records))
    if not records:
        return json.dumps({
            "message": "No data sources found in the dataset",
            "data_sources": [],
        }, indent=2)
    return _format_page(data, records, "data_source", "data_sources", response_mode)


@mcp.tool()
@_handle_errors
async def powerdrill_create_data_source_from_local_file(
    dataset_id: str,
    file_path: str,
    file_name: str | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> str:
    """Upload a local file into an existing dataset as a new data source.

    The file is sent in chunks (multipart upload), registered as a FILE
    data source, and polled until Powerdrill reports it synched.  Large
    files can take a minute or more.

    Args:
        dataset_id: ID of the target dataset
        file_path: Path of the local file to upload
        file_name: Name for the data source (default: the file's base name)
        chunk_size: Chunk size in bytes (default: 5 MiB)
    """
    client = _get_client()
    result = await upload_file_as_data_source(
        client,
        dataset_id,
        file_path,
        file_name=file_name,
        chunk_size=chunk_size,
        poll_interval_ms=POLL_INTERVAL_MS,
        poll_max_attempts=POLL_MAX_ATTEMPTS,
    )
    return json.dumps(result, indent=2, default=str)


@mcp.tool()
@_handle_errors
async def powerdrill_create_dataset_from_local_file(
    file_path: str,
    dataset_name: str | None = None,
    dataset_description: str | None = None,
    file_name: str | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> str:
    """Create a dataset and upload a local file into it in one step.

    Args:
        file_path: Path of the local file to upload
        dataset_name: Dataset name (default: the file's base name)
        dataset_description: Optional dataset description
        file_name: Name for the data source (default: the file's base name)
        chunk_size: Chunk size in bytes (default: 5 MiB)
    """
    base_name = os.path.basename(file_path)
    if not os.path.isfile(os.path.expanduser(file_path)):
        raise UploadFileNotFoundError(f"File not found: {file_path}")
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be a positive integer, got {chunk_size!r}.")

    client = _get_client()
    data = response_data(
        await client.create_dataset(dataset_name or base_name, dataset_description),
        "id",
    )
    dataset_id = str(data["id"])
    _log.info("create_dataset_from_local_file dataset=%s", dataset_id)

    try:
        result = await upload_file_as_data_source(
            client,
            dataset_id,
            file_path,
            file_name=file_name,
            chunk_size=chunk_size,
            poll_interval_ms=POLL_INTERVAL_MS,
            poll_max_attempts=POLL_MAX_ATTEMPTS,
        )
    except UploadError as exc:
        exc.dataset_id = dataset_id
        raise
    result["dataset_name"] = dataset_name or base_name
    return json.dumps(result, indent=2, default=str)


# ===================================================================
# Tools — Sessions and jobs
# ===================================================================


@mcp.tool()
@_handle_errors
async def powerdrill_list_sessions(
    page_number: int = 1,
    page_size: int = 10,
    search: str | None = None,
    response_mode: ResponseMode = "standard",
) -> str:
    """List analysis sessions.

    Args:
        page_number: Page to fetch (default: 1)
        page_size: Items per page (default: 10)
        search: Filter sessions by name
        response_mode: 'compact', 'standard', or 'full'.  Default: standard.
    """
    _validate_page(page_number, page_size)
    client = _get_client()
    data = response_data(
        await client.list_sessions(page_number, page_size, search), "records"
    )
    records = data["records"]
    _log.info("list_sessions count=%d mode=%s", len(records), response_mode)
    return _format_page(data, records, "session", "sessions", response_mode)


@mcp.tool()
@_handle_errors
async def powerdrill_create_session(
    name: str,
    output_language: OutputLanguage = "AUTO",
    job_mode: JobMode = "AUTO",
    max_contextual_job_history: int = 10,
    agent_id: AgentId = "DATA_ANALYSIS_AGENT",
) -> str:
    """Create a session that groups related jobs and keeps conversation context.

    Pass the returned session_id to powerdrill_create_job.

    Args:
        name: Session name (up to 128 characters)
        output_language: Language of generated output (default: AUTO)
        job_mode: AUTO or DATA_ANALYTICS (default: AUTO)
        max_contextual_job_history: Recent jobs kept as context, 0-10
                                    (default: 10)
        agent_id: Agent to use (default: DATA_ANALYSIS_AGENT)
    """
    if not name or len(name) > 128:
        raise ValueError("name must be 1-128 characters.")
    if not 0 <= max_contextual_job_history <= 10:
        raise ValueError(
            "max_contextual_job_history must be between 0 and 10, "
            f"got {max_contextual_job_history}."
        )
    client = _get_client()
    data = response_data(
        await client.create_session(
            name,
            output_language=output_language,
            job_mode=job_mode,
            max_contextual_job_history=max_contextual_job_history,
            agent_id=agent_id,
        ),
        "id",
    )
    _log.info("create_session id=%s", data["id"])
    return json.dumps({"session_id": data["id"]}, indent=2)


def _process_block(block: dict[str, Any]) -> dict[str, Any]:
    """Reduce TABLE/IMAGE blocks to their download link."""
    block_type = block.get("type")
    content = block.get("content")
    if block_type in ("TABLE", "IMAGE") and isinstance(content, dict):
        return {
            "type": block_type,
            "url": content.get("url"),
            "name": content.get("name"),
            "expires_at": content.get("expires_at"),
        }
    return {
        "type": block_type,
        "content": content,
        "stage": block.get("stage"),
    }


@mcp.tool()
@_handle_errors
async def powerdrill_create_job(
    question: str,
    dataset_id: str,
    datasource_ids: list[str] | None = None,
    session_id: str | None = None,
    output_language: OutputLanguage = "AUTO",
    job_mode: JobMode = "AUTO",
) -> str:
    """Ask a natural-language question about a dataset.

    Returns the job's answer blocks.  TABLE and IMAGE blocks are returned
    as download links (they expire — see expires_at).

    Args:
        question: The question or prompt to analyze the data
        dataset_id: ID of the dataset to analyze
        datasource_ids: Restrict analysis to these data sources
        session_id: Session to group this job with (see
                    powerdrill_create_session)
        output_language: Language of generated output (default: AUTO)
        job_mode: AUTO or DATA_ANALYTICS (default: AUTO)
    """
    if not question or not question.strip():
        raise ValueError("question must be a non-empty string.")
    if not dataset_id:
        raise ValueError("dataset_id must be a non-empty string.")
    client = _get_client()
    data = response_data(
        await client.create_job(
            question,
            dataset_id,
            datasource_ids=datasource_ids,
            session_id=session_id,
            output_language=output_language,
            job_mode=job_mode,
        ),
        "job_id",
    )
    blocks = [_process_block(b) for b in data.get("blocks") or []]
    _log.info("create_job job=%s dataset=%s blocks=%d", data["job_id"], dataset_id, len(blocks))
    return json.dumps({"job_id": data["job_id"], "blocks": blocks}, indent=2, default=str)


# ===================================================================
# Entry point
# ===================================================================


def main():
    mcp.run()


if __name__ == "__main__":
    main()
