import json
from typing import List

import httpx
import pytest
import respx
from httpx import Response

from keyrelay.config import Config
from keyrelay.coordinator import Coordinator
from keyrelay.credential_pool import CredentialPool
from keyrelay.errors import (
    ContentBlocked,
    QuotaExceeded,
    StreamDecodeError,
    TransientProviderError,
)
from keyrelay.pool_client import LocalPoolClient
from keyrelay.reporting import OutcomeReporter
from keyrelay.request_builder import build_request
from keyrelay.response_client import ResponseClient
from keyrelay.store import MemoryStore

BASE_URL = "https://generativelanguage.googleapis.com"
GENERATE_URL = f"{BASE_URL}/v1beta/models/gemini-2.5-flash:generateContent"
STREAM_PATH = "/v1beta/models/gemini-2.5-flash:streamGenerateContent"


class ChunkedStream(httpx.AsyncByteStream):
    def __init__(self, chunks: List[bytes]):
        self._chunks = chunks

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk


def candidate_body(text, finish_reason="STOP"):
    return {
        "candidates": [
            {
                "content": {"role": "model", "parts": [{"text": text}]},
                "finishReason": finish_reason,
            }
        ],
        "usageMetadata": {
            "promptTokenCount": 3,
            "candidatesTokenCount": 1,
            "totalTokenCount": 4,
        },
    }


def sse(record) -> bytes:
    return f"data: {json.dumps(record)}\r\n\r\n".encode("utf-8")


@pytest.fixture
async def pool():
    pool = CredentialPool(MemoryStore())
    await pool.reconfigure(["key-one-secret-1", "key-two-secret-2"])
    return pool


@pytest.fixture
async def setup(pool):
    config = Config(api_keys=["key-one-secret-1", "key-two-secret-2"])
    pool_client = LocalPoolClient(Coordinator(pool, MemoryStore()))
    reporter = OutcomeReporter(pool_client)
    http_client = httpx.AsyncClient(base_url=config.gemini_base_url)
    client = ResponseClient(pool_client, http_client, config, reporter)

    yield client, reporter

    await reporter.close()
    await http_client.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_send_success_reports_and_returns_text(setup, pool):
    client, reporter = setup
    route = respx.post(GENERATE_URL).mock(
        return_value=Response(200, json=candidate_body("Hello from Gemini!"))
    )

    result = await client.send(build_request("Hi"), "s1")
    await reporter.flush()

    assert result.text == "Hello from Gemini!"
    assert result.finish_reason == "STOP"
    assert result.credential_index == 0
    assert result.usage == {"prompt_tokens": 3, "output_tokens": 1, "total_tokens": 4}
    assert route.calls.last.request.headers["x-goog-api-key"] == "key-one-secret-1"
    assert json.loads(route.calls.last.request.content)["contents"][0]["parts"] == [
        {"text": "Hi"}
    ]
    assert pool.pool.records[0].last_used is not None


@pytest.mark.asyncio
@respx.mock
async def test_send_uses_bound_credential(setup):
    client, _ = setup
    route = respx.post(GENERATE_URL).mock(
        return_value=Response(200, json=candidate_body("ok"))
    )

    first = await client.send(build_request("Hi"), "s1", credential_index=1)
    second = await client.send(build_request("Hi"), "s1", credential_index=1)

    assert first.credential_index == second.credential_index == 1
    keys = [call.request.headers["x-goog-api-key"] for call in route.calls]
    assert keys == ["key-two-secret-2", "key-two-secret-2"]


@pytest.mark.asyncio
@respx.mock
async def test_send_missing_bound_credential_selects_another(setup):
    client, _ = setup
    respx.post(GENERATE_URL).mock(return_value=Response(200, json=candidate_body("ok")))

    result = await client.send(build_request("Hi"), "s1", credential_index=9)

    assert result.credential_index == 0


@pytest.mark.asyncio
@respx.mock
async def test_send_429_raises_quota_and_marks_exhausted(setup, pool):
    client, reporter = setup
    respx.post(GENERATE_URL).mock(
        return_value=Response(
            429,
            json={"error": {"code": 429, "message": "Resource has been exhausted"}},
        )
    )

    with pytest.raises(QuotaExceeded) as exc_info:
        await client.send(build_request("Hi"), "s1")
    await reporter.flush()

    assert exc_info.value.status_code == 429
    assert exc_info.value.credential_index == 0
    assert "Resource has been exhausted" in exc_info.value.message
    assert pool.pool.records[0].quota_exhausted is True
    assert pool.pool.records[0].error_count == 1


@pytest.mark.asyncio
@respx.mock
async def test_send_500_raises_transient(setup, pool):
    client, reporter = setup
    respx.post(GENERATE_URL).mock(return_value=Response(500, text="Internal error"))

    with pytest.raises(TransientProviderError) as exc_info:
        await client.send(build_request("Hi"), "s1")
    await reporter.flush()

    assert not isinstance(exc_info.value, QuotaExceeded)
    assert exc_info.value.status_code == 500
    assert pool.pool.records[0].quota_exhausted is False
    assert pool.pool.records[0].error_count == 1


@pytest.mark.asyncio
@respx.mock
async def test_send_timeout_raises_transient(setup, pool):
    client, reporter = setup
    respx.post(GENERATE_URL).mock(side_effect=httpx.ReadTimeout("timed out"))

    with pytest.raises(TransientProviderError, match="timed out"):
        await client.send(build_request("Hi"), "s1")
    await reporter.flush()

    assert pool.pool.records[0].error_count == 1


@pytest.mark.asyncio
@respx.mock
async def test_send_blocked_does_not_touch_pool(setup, pool):
    client, reporter = setup
    respx.post(GENERATE_URL).mock(
        return_value=Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})
    )

    with pytest.raises(ContentBlocked) as exc_info:
        await client.send(build_request("Hi"), "s1")
    await reporter.flush()

    assert exc_info.value.reason == "SAFETY"
    record = pool.pool.records[0]
    assert record.error_count == 0
    assert record.last_used is None
    assert record.healthy is True


@pytest.mark.asyncio
@respx.mock
async def test_send_malformed_body_is_transient(setup, pool):
    client, reporter = setup
    respx.post(GENERATE_URL).mock(return_value=Response(200, text="<html>oops</html>"))

    with pytest.raises(TransientProviderError, match="Malformed"):
        await client.send(build_request("Hi"), "s1")
    await reporter.flush()

    assert pool.pool.records[0].error_count == 1


@pytest.mark.asyncio
@respx.mock
async def test_stream_yields_chunks_and_reports_success(setup, pool):
    client, reporter = setup
    body = sse(candidate_body("Hel", None)) + sse(candidate_body("lo!", "STOP"))
    route = respx.post(host="generativelanguage.googleapis.com", path=STREAM_PATH).mock(
        return_value=Response(200, stream=ChunkedStream([body[:13], body[13:40], body[40:]]))
    )

    chunks = [chunk async for chunk in client.stream(build_request("Hi"), "s1")]
    await reporter.flush()

    assert "".join(chunk.text for chunk in chunks) == "Hello!"
    assert chunks[-1].finish_reason == "STOP"
    assert route.calls.last.request.url.params["alt"] == "sse"
    assert pool.pool.records[0].last_used is not None


@pytest.mark.asyncio
@respx.mock
async def test_stream_cancelled_reports_nothing(setup, pool):
    client, reporter = setup
    body = b"".join(sse({"text": part}) for part in ("one ", "two ", "three"))
    respx.post(host="generativelanguage.googleapis.com", path=STREAM_PATH).mock(
        return_value=Response(200, stream=ChunkedStream([body]))
    )

    stream = client.stream(build_request("Hi"), "s1")
    first = await stream.__anext__()
    await stream.aclose()
    await reporter.flush()

    assert first.text == "one "
    record = pool.pool.records[0]
    assert record.last_used is None
    assert record.error_count == 0


@pytest.mark.asyncio
@respx.mock
async def test_stream_without_records_is_decode_error(setup, pool):
    client, reporter = setup
    respx.post(host="generativelanguage.googleapis.com", path=STREAM_PATH).mock(
        return_value=Response(200, stream=ChunkedStream([b"data: {broken\n", b"\n"]))
    )

    with pytest.raises(StreamDecodeError):
        async for _ in client.stream(build_request("Hi"), "s1"):
            pass
    await reporter.flush()

    assert pool.pool.records[0].error_count == 1
    assert pool.pool.records[0].quota_exhausted is False


@pytest.mark.asyncio
@respx.mock
async def test_stream_error_record_reports_quota_once(setup, pool):
    client, reporter = setup
    error = {"error": {"code": 429, "message": "Quota exceeded for this key"}}
    respx.post(host="generativelanguage.googleapis.com", path=STREAM_PATH).mock(
        return_value=Response(
            200, stream=ChunkedStream([sse({"text": "partial"}), sse(error)])
        )
    )

    received = []
    with pytest.raises(QuotaExceeded):
        async for chunk in client.stream(build_request("Hi"), "s1"):
            received.append(chunk.text)
    await reporter.flush()

    assert received == ["partial"]
    assert pool.pool.records[0].quota_exhausted is True
    assert pool.pool.records[0].error_count == 1


@pytest.mark.asyncio
@respx.mock
async def test_stream_http_error_is_transient(setup, pool):
    client, reporter = setup
    respx.post(host="generativelanguage.googleapis.com", path=STREAM_PATH).mock(
        return_value=Response(503, json={"error": {"message": "Service unavailable"}})
    )

    with pytest.raises(TransientProviderError, match="503 Service unavailable"):
        async for _ in client.stream(build_request("Hi"), "s1"):
            pass
    await reporter.flush()

    assert pool.pool.records[0].error_count == 1


@pytest.mark.asyncio
@respx.mock
async def test_stream_safety_block_raises_content_blocked(setup, pool):
    client, reporter = setup
    body = sse({"candidates": [{"content": {"parts": []}, "finishReason": "SAFETY"}]})
    respx.post(host="generativelanguage.googleapis.com", path=STREAM_PATH).mock(
        return_value=Response(200, stream=ChunkedStream([body]))
    )

    with pytest.raises(ContentBlocked):
        async for _ in client.stream(build_request("Hi"), "s1"):
            pass
    await reporter.flush()

    assert pool.pool.records[0].error_count == 0
    assert pool.pool.records[0].last_used is None
