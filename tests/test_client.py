import json

import httpx
import pytest

from powerdrill_py.client import (
    PowerdrillAPIError,
    PowerdrillClient,
    PowerdrillConfig,
    connect,
    response_data,
)


def _config() -> PowerdrillConfig:
    return PowerdrillConfig(
        user_id="user-1",
        api_key="secret-key",
        api_url="https://api.test/api/v2/team",
    )


class _Recorder:
    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response


@pytest.mark.asyncio
async def test_get_sends_api_key_and_user_id_query() -> None:
    recorder = _Recorder(httpx.Response(200, json={"code": 0, "data": {"records": []}}))
    async with PowerdrillClient(_config(), transport=httpx.MockTransport(recorder)) as client:
        payload = await client.list_datasets(page_number=2, page_size=5)

    assert payload == {"code": 0, "data": {"records": []}}
    request = recorder.requests[0]
    assert request.method == "GET"
    assert request.url.path == "/api/v2/team/datasets"
    assert request.url.params["user_id"] == "user-1"
    assert request.url.params["page_number"] == "2"
    assert request.url.params["page_size"] == "5"
    assert "search" not in request.url.params
    assert request.headers["x-pd-api-key"] == "secret-key"


@pytest.mark.asyncio
async def test_post_puts_user_id_in_body_and_drops_none_fields() -> None:
    recorder = _Recorder(httpx.Response(200, json={"code": 0, "data": {"id": "ds-1"}}))
    async with PowerdrillClient(_config(), transport=httpx.MockTransport(recorder)) as client:
        await client.create_data_source("dset-1", "sales.csv", file_object_key="files/k")

    request = recorder.requests[0]
    assert request.method == "POST"
    assert request.url.path == "/api/v2/team/datasets/dset-1/datasources"
    assert "user_id" not in request.url.params
    assert json.loads(request.content) == {
        "name": "sales.csv",
        "type": "FILE",
        "file_object_key": "files/k",
        "user_id": "user-1",
    }


@pytest.mark.asyncio
async def test_create_job_never_streams() -> None:
    recorder = _Recorder(httpx.Response(200, json={"code": 0, "data": {"job_id": "j"}}))
    async with PowerdrillClient(_config(), transport=httpx.MockTransport(recorder)) as client:
        await client.create_job("What sold best?", "dset-1", session_id="s-1")

    body = json.loads(recorder.requests[0].content)
    assert body["stream"] is False
    assert body["session_id"] == "s-1"
    assert "datasource_ids" not in body


@pytest.mark.asyncio
async def test_http_error_raises_with_status_and_body() -> None:
    recorder = _Recorder(httpx.Response(500, text="upstream exploded"))
    async with PowerdrillClient(_config(), transport=httpx.MockTransport(recorder)) as client:
        with pytest.raises(PowerdrillAPIError) as exc:
            await client.get_dataset_overview("dset-1")

    assert exc.value.status_code == 500
    assert exc.value.body == "upstream exploded"
    assert "HTTP 500" in str(exc.value)


@pytest.mark.asyncio
async def test_upload_part_skips_api_key_and_returns_etag() -> None:
    recorder = _Recorder(httpx.Response(200, headers={"ETag": '"abc"'}))
    async with PowerdrillClient(_config(), transport=httpx.MockTransport(recorder)) as client:
        etag = await client.upload_part("https://s3.test/bucket/part-1?sig=xyz", b"chunk")

    request = recorder.requests[0]
    assert etag == '"abc"'
    assert request.method == "PUT"
    assert request.content == b"chunk"
    assert request.headers["content-type"] == "application/octet-stream"
    assert "x-pd-api-key" not in request.headers


@pytest.mark.asyncio
async def test_upload_part_without_etag_is_an_error() -> None:
    recorder = _Recorder(httpx.Response(200))
    async with PowerdrillClient(_config(), transport=httpx.MockTransport(recorder)) as client:
        with pytest.raises(PowerdrillAPIError, match="ETag"):
            await client.upload_part("https://s3.test/part-1", b"chunk")


def test_response_data_unwraps_and_checks_required_keys() -> None:
    assert response_data({"code": 0, "data": {"id": "x"}}, "id") == {"id": "x"}
    with pytest.raises(PowerdrillAPIError, match="Invalid API response"):
        response_data({"code": 1, "data": {}})
    with pytest.raises(PowerdrillAPIError, match="missing"):
        response_data({"code": 0, "data": {"id": "x"}}, "records")


def test_config_from_env(monkeypatch) -> None:
    monkeypatch.setenv("POWERDRILL_USER_ID", "u")
    monkeypatch.setenv("POWERDRILL_PROJECT_API_KEY", "pd-secret-123")
    monkeypatch.setenv("POWERDRILL_TIMEOUT_MS", "not-a-number")
    monkeypatch.delenv("POWERDRILL_API_URL", raising=False)

    config = PowerdrillConfig.from_env()
    assert config.user_id == "u"
    assert config.api_url == "https://ai.data.cloud/api/v2/team"
    assert config.timeout_ms == 30000
    assert "pd-secret-123" not in repr(config)


def test_connect_requires_credentials(monkeypatch) -> None:
    monkeypatch.delenv("POWERDRILL_USER_ID", raising=False)
    monkeypatch.setenv("POWERDRILL_PROJECT_API_KEY", "k")
    with pytest.raises(KeyError):
        connect()


def test_empty_credential_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("POWERDRILL_USER_ID", "")
    monkeypatch.setenv("POWERDRILL_PROJECT_API_KEY", "k")
    with pytest.raises(ValueError, match="required"):
        PowerdrillConfig.from_env()


@pytest.mark.asyncio
@pytest.mark.parametrize("dataset_id", ["../x", "a/b", "..", ""])
async def test_ids_cannot_escape_their_path_segment(dataset_id) -> None:
    recorder = _Recorder(httpx.Response(200, json={"code": 0, "data": {}}))
    async with PowerdrillClient(_config(), transport=httpx.MockTransport(recorder)) as client:
        with pytest.raises(ValueError, match="Invalid path segment"):
            await client.get_dataset_overview(dataset_id)
        with pytest.raises(ValueError, match="Invalid path segment"):
            await client.get_data_source("dset-1", dataset_id)
    assert recorder.requests == []
