"""Core wrapper: connect() entry point and the async PowerdrillClient."""

from __future__ import annotations

import json
import os
from typing import Any

import httpx
from pydantic import BaseModel, Field
from yarl import URL

POWERDRILL_API_URL = "https://ai.data.cloud/api/v2/team"
DEFAULT_TIMEOUT_MS = 30_000


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PowerdrillAPIError(Exception):
    """Raised when the Powerdrill API answers with an HTTP or envelope error."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def response_data(payload: Any, *required: str) -> Any:
    """Unwrap the ``{"code": 0, "data": ...}`` envelope.

    Raises :class:`PowerdrillAPIError` when ``code`` is non-zero, ``data`` is
    missing, or any of *required* keys is absent from ``data``.
    """
    if not isinstance(payload, dict) or payload.get("code") != 0:
        raise PowerdrillAPIError(
            f"Invalid API response: {json.dumps(payload, default=str)}",
            body=payload,
        )
    data = payload.get("data")
    if data is None:
        raise PowerdrillAPIError(
            f"Invalid API response: {json.dumps(payload, default=str)}",
            body=payload,
        )
    missing = [key for key in required if not isinstance(data, dict) or data.get(key) is None]
    if missing:
        raise PowerdrillAPIError(
            f"API response is missing {missing}: {json.dumps(payload, default=str)}",
            body=payload,
        )
    return data


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class PowerdrillConfig(BaseModel):
    """Explicit connection settings for one Powerdrill project."""

    user_id: str
    api_key: str = Field(repr=False)
    api_url: str = POWERDRILL_API_URL
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)

    @classmethod
    def from_env(cls) -> PowerdrillConfig:
        """Read ``POWERDRILL_*`` variables.

        ``POWERDRILL_USER_ID`` and ``POWERDRILL_PROJECT_API_KEY`` are required;
        a missing one raises ``KeyError``, an empty one ``ValueError``.
        """
        user_id = os.environ["POWERDRILL_USER_ID"]
        api_key = os.environ["POWERDRILL_PROJECT_API_KEY"]
        if not user_id or not api_key:
            raise ValueError("Powerdrill User ID and Project API Key are required.")

        timeout_ms = DEFAULT_TIMEOUT_MS
        raw_timeout = os.environ.get("POWERDRILL_TIMEOUT_MS")
        if raw_timeout:
            try:
                timeout_ms = int(raw_timeout)
            except ValueError:
                pass

        return cls(
            user_id=user_id,
            api_key=api_key,
            api_url=os.environ.get("POWERDRILL_API_URL") or POWERDRILL_API_URL,
            timeout_ms=timeout_ms,
        )


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


def connect(config: PowerdrillConfig | None = None) -> PowerdrillClient:
    """One-liner entry point.

    Parameters
    ----------
    config:
        Explicit settings. If *None*, they are read from the environment via
        :meth:`PowerdrillConfig.from_env`.
    """
    return PowerdrillClient(config or PowerdrillConfig.from_env())


class PowerdrillClient:
    """Async wrapper around the Powerdrill team API.

    Every method returns the parsed JSON body as a plain dict; callers unwrap
    the ``{code, data}`` envelope with :func:`response_data`.
    """

    def __init__(
        self,
        config: PowerdrillConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.base_url = URL(config.api_url.rstrip("/"))
        self._http = httpx.AsyncClient(
            timeout=config.timeout_ms / 1000,
            transport=transport,
        )

    async def __aenter__(self) -> PowerdrillClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _url(self, *segments: str) -> URL:
        """Join *segments* under the base URL, one path segment each.

        yarl keeps "/" and resolves dot segments, so ids that would leave
        their segment are rejected with ``ValueError``.
        """
        url = self.base_url
        for segment in segments:
            if not segment or segment in (".", "..") or "/" in segment:
                raise ValueError(f"Invalid path segment {segment!r} in Powerdrill id.")
            url = url / segment
        return url

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-pd-api-key": self.config.api_key,
        }

    async def _request(
        self,
        method: str,
        url: URL,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        # user_id rides in the query string for reads and in the body for writes
        query = {k: v for k, v in (params or {}).items() if v is not None}
        if body is None:
            query["user_id"] = self.config.user_id
        else:
            body = {k: v for k, v in body.items() if v is not None}
            body["user_id"] = self.config.user_id

        response = await self._http.request(
            method,
            str(url),
            params=query or None,
            json=body,
            headers=self._headers(),
        )
        if response.is_error:
            raise PowerdrillAPIError(
                f"{method} {url.path} failed with HTTP {response.status_code}: "
                f"{response.text[:500]}",
                status_code=response.status_code,
                body=response.text,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise PowerdrillAPIError(
                f"{method} {url.path} returned a non-JSON body",
                status_code=response.status_code,
                body=response.text,
            ) from exc

    # ------------------------------------------------------------------
    # Datasets
    # ------------------------------------------------------------------

    async def list_datasets(
        self,
        page_number: int | None = None,
        page_size: int | None = None,
        search: str | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "GET",
            self._url("datasets"),
            params={"page_number": page_number, "page_size": page_size, "search": search},
        )

    async def get_dataset_overview(self, dataset_id: str) -> dict[str, Any]:
        """Fetch description, summary, keywords and exploration questions."""
        return await self._request("GET", self._url("datasets", dataset_id, "overview"))

    async def create_dataset(
        self,
        name: str,
        description: str | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            self._url("datasets"),
            body={"name": name, "description": description},
        )

    # ------------------------------------------------------------------
    # Data sources
    # ------------------------------------------------------------------

    async def list_data_sources(
        self,
        dataset_id: str,
        page_number: int | None = None,
        page_size: int | None = None,
        status: str | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "GET",
            self._url("datasets", dataset_id, "datasources"),
            params={"page_number": page_number, "page_size": page_size, "status": status},
        )

    async def get_data_source(self, dataset_id: str, data_source_id: str) -> dict[str, Any]:
        return await self._request(
            "GET", self._url("datasets", dataset_id, "datasources", data_source_id)
        )

    async def create_data_source(
        self,
        dataset_id: str,
        name: str,
        *,
        file_object_key: str | None = None,
        source_type: str = "FILE",
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            self._url("datasets", dataset_id, "datasources"),
            body={"name": name, "type": source_type, "file_object_key": file_object_key},
        )

    # ------------------------------------------------------------------
    # Sessions and jobs
    # ------------------------------------------------------------------

    async def list_sessions(
        self,
        page_number: int | None = None,
        page_size: int | None = None,
        search: str | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "GET",
            self._url("sessions"),
            params={"page_number": page_number, "page_size": page_size, "search": search},
        )

    async def create_session(
        self,
        name: str,
        *,
        output_language: str = "AUTO",
        job_mode: str = "AUTO",
        max_contextual_job_history: int = 10,
        agent_id: str = "DATA_ANALYSIS_AGENT",
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            self._url("sessions"),
            body={
                "name": name,
                "output_language": output_language,
                "job_mode": job_mode,
                "max_contextual_job_history": max_contextual_job_history,
                "agent_id": agent_id,
            },
        )

    async def create_job(
        self,
        question: str,
        dataset_id: str,
        *,
        datasource_ids: list[str] | None = None,
        session_id: str | None = None,
        output_language: str = "AUTO",
        job_mode: str = "AUTO",
    ) -> dict[str, Any]:
        """Run a natural-language analysis job and return its blocks.

        Jobs are always requested with ``stream=False``.
        """
        return await self._request(
            "POST",
            self._url("jobs"),
            body={
                "question": question,
                "dataset_id": dataset_id,
                "datasource_ids": datasource_ids or None,
                "session_id": session_id,
                "stream": False,
                "output_language": output_language,
                "job_mode": job_mode,
            },
        )

    # ------------------------------------------------------------------
    # Multipart file upload
    # ------------------------------------------------------------------

    async def init_multipart_upload(self, file_name: str, file_size: int) -> dict[str, Any]:
        return await self._request(
            "POST",
            self._url("file", "init-multipart-upload"),
            body={"file_name": file_name, "file_size": file_size},
        )

    async def upload_part(self, upload_url: str, data: bytes) -> str:
        """PUT one chunk to its signed URL and return the raw ``ETag`` header.

        The API key is not sent: signed storage URLs carry their own auth.
        """
        response = await self._http.put(
            upload_url,
            content=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        if response.is_error:
            raise PowerdrillAPIError(
                f"Part upload failed with HTTP {response.status_code}: "
                f"{response.text[:500]}",
                status_code=response.status_code,
                body=response.text,
            )
        etag = response.headers.get("ETag")
        if not etag:
            raise PowerdrillAPIError(
                "Part upload response has no ETag header",
                status_code=response.status_code,
            )
        return etag

    async def complete_multipart_upload(
        self,
        file_object_key: str,
        upload_id: str,
        part_etags: list[dict[str, Any]],
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            self._url("file", "complete-multipart-upload"),
            body={
                "file_object_key": file_object_key,
                "upload_id": upload_id,
                "part_etags": part_etags,
            },
        )
