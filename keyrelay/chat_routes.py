"""Chat endpoints: conversation turns over the session orchestrator."""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from starlette.responses import StreamingResponse

from keyrelay.errors import (
    ContentBlocked,
    NoCredentialError,
    QuotaExceeded,
    RelayError,
    user_message,
)
from keyrelay.models import FileReference, GenerationOptions

logger = logging.getLogger(__name__)

chat_router = APIRouter(prefix="/chat", tags=["chat"])

_OPTION_FIELDS = ("temperature", "top_k", "top_p", "max_output_tokens", "model")


def _status_for(error: RelayError) -> int:
    if isinstance(error, ContentBlocked):
        return 422
    if isinstance(error, QuotaExceeded):
        return 429
    if isinstance(error, NoCredentialError):
        return 503
    return 502


def _parse_turn(body: Any) -> Dict[str, Any]:
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    text = body.get("text")
    if not isinstance(text, str) or not text.strip():
        raise HTTPException(status_code=400, detail="text is required")

    raw_options = body.get("options") or {}
    if not isinstance(raw_options, dict):
        raise HTTPException(status_code=400, detail="options must be an object")
    unknown = sorted(set(raw_options) - set(_OPTION_FIELDS))
    if unknown:
        raise HTTPException(
            status_code=400, detail=f"Unknown options: {', '.join(unknown)}"
        )

    files: List[FileReference] = []
    for item in body.get("files") or []:
        if not isinstance(item, dict) or not item.get("name") or not item.get("mime_type"):
            raise HTTPException(
                status_code=400, detail="files entries need name and mime_type"
            )
        files.append(
            FileReference(name=item["name"], mime_type=item["mime_type"], uri=item.get("uri"))
        )

    metadata = body.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        raise HTTPException(status_code=400, detail="metadata must be an object")

    return {
        "text": text,
        "options": GenerationOptions(**raw_options),
        "system_instruction": body.get("system_instruction"),
        "files": files,
        "metadata": metadata,
    }


def _event(data: Dict[str, Optional[object]]) -> str:
    return f"data: {json.dumps(data)}\n\n"


@chat_router.post("/{key}/turn")
async def send_turn(request: Request, key: str) -> Dict[str, object]:
    """Run one turn in the conversation identified by ``key``.

    Body: {"text": "...", "options": {...}, "metadata": {...}, "files": [...]}
    """
    turn = _parse_turn(await request.json())
    orchestrator = request.app.state.orchestrator

    try:
        session = await orchestrator.get_or_create_session(key, turn["metadata"])
        result = await orchestrator.send_turn(
            session,
            turn["text"],
            options=turn["options"],
            system_instruction=turn["system_instruction"],
            files=turn["files"],
        )
    except RelayError as e:
        raise HTTPException(status_code=_status_for(e), detail=user_message(e))

    return {
        "session_id": session.id,
        "text": result.text,
        "finishReason": result.finish_reason,
        "usage": result.usage,
    }


@chat_router.post("/{key}/stream")
async def stream_turn(request: Request, key: str) -> StreamingResponse:
    """Run one turn and stream the reply as server-sent events.

    Each event is ``data: {"text": ..., "finishReason": ...}``; a failed turn
    ends with ``data: {"error": ...}``.
    """
    turn = _parse_turn(await request.json())
    orchestrator = request.app.state.orchestrator

    try:
        session = await orchestrator.get_or_create_session(key, turn["metadata"])
    except RelayError as e:
        raise HTTPException(status_code=_status_for(e), detail=user_message(e))

    async def events() -> AsyncIterator[str]:
        stream = orchestrator.stream_turn(
            session,
            turn["text"],
            options=turn["options"],
            system_instruction=turn["system_instruction"],
            files=turn["files"],
        )
        try:
            async for chunk in stream:
                yield _event({"text": chunk.text, "finishReason": chunk.finish_reason})
        except RelayError as e:
            logger.warning("Stream for session %s failed: %s", session.id, e)
            yield _event({"error": user_message(e)})
        finally:
            await stream.aclose()

    return StreamingResponse(events(), media_type="text/event-stream")


@chat_router.get("/{key}")
async def get_session(request: Request, key: str) -> Dict[str, object]:
    """Get the stored history of a conversation."""
    session = await request.app.state.sessions.get(key)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {key} not found")
    return session.to_dict()
