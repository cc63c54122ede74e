"""Builds provider request payloads from prompts or message histories.

Everything here is pure: no I/O and no shared state.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from keyrelay.models import (
    ROLE_ASSISTANT,
    ROLE_USER,
    ChatMessage,
    FileReference,
    GenerationOptions,
)

logger = logging.getLogger(__name__)

PROVIDER_MODEL_ROLE = "model"

MessageLike = Union[ChatMessage, Mapping[str, Any]]
RequestInput = Union[str, Sequence[MessageLike]]


def _message_fields(message: MessageLike) -> Tuple[str, str]:
    if isinstance(message, ChatMessage):
        return message.role, message.text
    return str(message["role"]), str(message.get("text", ""))


def _provider_role(role: str) -> str:
    if role == ROLE_ASSISTANT:
        return PROVIDER_MODEL_ROLE
    if role == ROLE_USER:
        return ROLE_USER
    raise ValueError(f"Unsupported message role: {role}")


def _generation_config(options: GenerationOptions) -> Dict[str, Any]:
    return {
        "temperature": options.temperature,
        "topK": options.top_k,
        "topP": options.top_p,
        "maxOutputTokens": options.max_output_tokens,
    }


def _file_parts(files: Sequence[FileReference]) -> List[Dict[str, Any]]:
    parts = []
    for reference in files:
        if not reference.uri or not reference.mime_type:
            logger.warning(
                "Dropping file reference %s: no resolved remote handle",
                reference.name,
            )
            continue
        parts.append(
            {"fileData": {"fileUri": reference.uri, "mimeType": reference.mime_type}}
        )
    return parts


def render_context(context: Mapping[str, Any]) -> str:
    lines = ["Conversation context:"]
    for key, value in context.items():
        if value in (None, "", [], {}):
            continue
        lines.append(f"- {key}: {value}")
    return "\n".join(lines) if len(lines) > 1 else ""


def build_request(
    prompt: RequestInput,
    options: Optional[GenerationOptions] = None,
    system_instruction: Optional[str] = None,
    files: Optional[Sequence[FileReference]] = None,
    context: Optional[Mapping[str, Any]] = None,
    safety_settings: Optional[Sequence[Mapping[str, str]]] = None,
) -> Dict[str, Any]:
    """Turn a prompt or an ordered message history into a request payload.

    Args:
        prompt: A single prompt string (sent as one user turn) or an ordered
            sequence of messages with ``user``/``assistant`` roles.
        options: Sampling options; defaults apply when omitted.
        system_instruction: Optional system prompt.
        files: File references. Only resolved references are sent, ahead of
            the text of the last user turn.
        context: Free-form conversation metadata, appended to the system
            instruction.
        safety_settings: Provider safety settings passed through unchanged.

    Returns:
        The payload for ``generateContent`` / ``streamGenerateContent``.
    """
    options = options or GenerationOptions()

    contents: List[Dict[str, Any]] = []
    if isinstance(prompt, str):
        contents.append({"role": ROLE_USER, "parts": [{"text": prompt}]})
    else:
        for message in prompt:
            role, text = _message_fields(message)
            contents.append({"role": _provider_role(role), "parts": [{"text": text}]})

    if not contents:
        raise ValueError("Cannot build a request without any message")

    file_parts = _file_parts(files or [])
    if file_parts:
        target = next(
            (item for item in reversed(contents) if item["role"] == ROLE_USER), None
        )
        if target is None:
            logger.warning(
                "Dropping %d file references: request has no user turn",
                len(file_parts),
            )
        else:
            target["parts"] = file_parts + target["parts"]

    payload: Dict[str, Any] = {
        "contents": contents,
        "generationConfig": _generation_config(options),
    }

    instruction_blocks = []
    if system_instruction:
        instruction_blocks.append(system_instruction)
    if context:
        rendered = render_context(context)
        if rendered:
            instruction_blocks.append(rendered)
    if instruction_blocks:
        payload["systemInstruction"] = {
            "parts": [{"text": "\n\n".join(instruction_blocks)}]
        }

    if safety_settings:
        payload["safetySettings"] = [dict(item) for item in safety_settings]

    return payload


def history_from_payload(payload: Mapping[str, Any]) -> List[Tuple[str, str]]:
    """Ordered ``(role, text)`` pairs carried by a built payload."""
    history = []
    for item in payload.get("contents", []):
        role = ROLE_ASSISTANT if item.get("role") == PROVIDER_MODEL_ROLE else ROLE_USER
        text = "".join(part.get("text", "") for part in item.get("parts", []))
        history.append((role, text))
    return history
