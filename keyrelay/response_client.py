import json
import logging
from typing import AsyncGenerator, Dict, Optional, Tuple, Type, cast

import httpx

from keyrelay.config import Config
from keyrelay.errors import (
    ContentBlocked,
    NoCredentialError,
    ProviderError,
    StreamDecodeError,
    StreamedAPIError,
    classify_failure,
    error_for_failure,
)
from keyrelay.models import (
    MODE_SINGLE,
    MODE_STREAM,
    Chunk,
    GenerationResult,
    PendingRequest,
    RequestState,
    mask_secret,
)
from keyrelay.pool_client import PoolClient
from keyrelay.reporting import OutcomeReporter
from keyrelay.stream_decoder import StreamDecoder, chunk_from_record, is_blocked

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-goog-api-key"


def _error_message(status_code: int, body: bytes, reason: str = "") -> str:
    """Pull the provider's error message out of a non-2xx body."""
    try:
        data = json.loads(body)
        error_obj = data.get("error", {}) if isinstance(data, dict) else {}
        if isinstance(error_obj, dict) and error_obj.get("message"):
            return f"{status_code} {error_obj['message']}"
    except ValueError:
        pass
    return f"{status_code} {reason}".strip()


class ResponseClient:
    """Sends built payloads to the provider and reports outcomes to the pool.

    Flow for every request:
    1. Select a credential (or acquire the session's bound one)
    2. POST the payload with the credential in the ``x-goog-api-key`` header
    3. Decode the reply; a safety block is raised as ContentBlocked and is
       never held against the credential
    4. Report success, or classify the failure and report it, exactly once
    """

    def __init__(
        self,
        pool_client: PoolClient,
        http_client: httpx.AsyncClient,
        config: Config,
        reporter: OutcomeReporter,
    ):
        self._pool_client = pool_client
        self._http_client = http_client
        self._config = config
        self._reporter = reporter

    async def resolve_credential(self, credential_index: Optional[int]) -> Tuple[str, int]:
        """Acquire the bound credential, selecting another if it is gone."""
        if credential_index is None:
            return await self._pool_client.select()
        try:
            return await self._pool_client.acquire(credential_index)
        except NoCredentialError:
            logger.warning(
                "Bound credential %s no longer configured, selecting another",
                credential_index,
            )
            return await self._pool_client.select()

    def _fail(
        self,
        request: PendingRequest,
        status_code: Optional[int],
        message: str,
        error_cls: Optional[Type[ProviderError]] = None,
    ) -> ProviderError:
        failure = classify_failure(status_code, message)
        self._reporter.report_failure(request.credential_index, failure)
        request.advance(RequestState.FAILED)
        logger.warning(
            "Generation failed (credential=%s, mode=%s, kind=%s): %s",
            request.credential_index,
            request.mode,
            failure.kind,
            message,
        )
        if error_cls is not None:
            return error_cls(message, status_code, request.credential_index)
        return error_for_failure(failure, request.credential_index)

    def _model_path(self, model: Optional[str], method: str) -> str:
        return f"/v1beta/models/{model or self._config.gemini_model}:{method}"

    async def send(
        self,
        payload: Dict[str, object],
        session_id: str,
        credential_index: Optional[int] = None,
        model: Optional[str] = None,
    ) -> GenerationResult:
        secret, index = await self.resolve_credential(credential_index)
        request = PendingRequest(payload=payload, credential_index=index, mode=MODE_SINGLE)
        logger.debug(
            "Sending request for session %s with key %s", session_id, mask_secret(secret)
        )

        request.advance(RequestState.SENT)
        try:
            response = await self._http_client.post(
                self._model_path(model, "generateContent"),
                json=payload,
                headers={API_KEY_HEADER: secret},
            )
        except httpx.TimeoutException:
            raise self._fail(request, None, "Request timed out")
        except httpx.RequestError as exc:
            raise self._fail(request, None, f"Request error: {exc}")

        if not response.is_success:
            raise self._fail(
                request,
                response.status_code,
                _error_message(response.status_code, response.content, response.reason_phrase),
            )

        try:
            chunk = chunk_from_record(cast(Dict[str, object], response.json()))
        except StreamedAPIError as exc:
            raise self._fail(request, exc.code, exc.message)
        except (ValueError, TypeError, AttributeError) as exc:
            raise self._fail(request, response.status_code, f"Malformed response body: {exc}")

        if is_blocked(chunk):
            request.advance(RequestState.FAILED)
            raise ContentBlocked(cast(str, chunk.finish_reason))

        if not chunk.text and chunk.finish_reason is None:
            raise self._fail(request, response.status_code, "No response generated")

        self._reporter.report_success(index)
        request.advance(RequestState.COMPLETED)
        return GenerationResult(
            text=chunk.text,
            finish_reason=chunk.finish_reason,
            credential_index=index,
            usage=chunk.usage,
        )

    async def stream(
        self,
        payload: Dict[str, object],
        session_id: str,
        credential_index: Optional[int] = None,
        model: Optional[str] = None,
    ) -> AsyncGenerator[Chunk, None]:
        """Yield text deltas as the provider produces them.

        Single-pass: a retry needs a new ``stream()`` call. Closing the
        iterator early releases the connection and reports nothing.
        """
        secret, index = await self.resolve_credential(credential_index)
        request = PendingRequest(payload=payload, credential_index=index, mode=MODE_STREAM)
        decoder = StreamDecoder()
        logger.debug(
            "Streaming request for session %s with key %s",
            session_id,
            mask_secret(secret),
        )

        request.advance(RequestState.SENT)
        try:
            async with self._http_client.stream(
                "POST",
                self._model_path(model, "streamGenerateContent"),
                params={"alt": "sse"},
                json=payload,
                headers={API_KEY_HEADER: secret},
            ) as response:
                if not response.is_success:
                    body = await response.aread()
                    raise self._fail(
                        request,
                        response.status_code,
                        _error_message(response.status_code, body, response.reason_phrase),
                    )

                request.advance(RequestState.STREAMING)
                async for raw in response.aiter_bytes():
                    for chunk in decoder.feed(raw):
                        if is_blocked(chunk):
                            request.advance(RequestState.FAILED)
                            raise ContentBlocked(cast(str, chunk.finish_reason))
                        yield chunk

                for chunk in decoder.finish():
                    if is_blocked(chunk):
                        request.advance(RequestState.FAILED)
                        raise ContentBlocked(cast(str, chunk.finish_reason))
                    yield chunk
        except GeneratorExit:
            request.advance(RequestState.CANCELLED)
            logger.info("Stream for session %s cancelled by consumer", session_id)
            raise
        except StreamedAPIError as exc:
            raise self._fail(request, exc.code, exc.message)
        except httpx.TimeoutException:
            raise self._fail(request, None, "Stream timed out")
        except httpx.RequestError as exc:
            raise self._fail(request, None, f"Stream error: {exc}")

        if decoder.chunks_decoded == 0:
            raise self._fail(
                request,
                None,
                f"Stream contained no decodable records "
                f"({len(decoder.warnings)} malformed lines)",
                error_cls=StreamDecodeError,
            )

        self._reporter.report_success(index)
        request.advance(RequestState.COMPLETED)
