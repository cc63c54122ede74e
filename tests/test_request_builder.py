import logging

import pytest

from keyrelay.models import (
    ROLE_ASSISTANT,
    ROLE_USER,
    ChatMessage,
    FileReference,
    GenerationOptions,
)
from keyrelay.request_builder import build_request, history_from_payload, render_context


def test_string_input_is_one_user_turn_with_defaults():
    payload = build_request("Write a short reply")

    assert payload["contents"] == [
        {"role": "user", "parts": [{"text": "Write a short reply"}]}
    ]
    assert payload["generationConfig"] == {
        "temperature": 0.7,
        "topK": 40,
        "topP": 0.95,
        "maxOutputTokens": 2048,
    }
    assert "systemInstruction" not in payload
    assert "safetySettings" not in payload


def test_history_maps_assistant_to_model_role():
    history = [
        ChatMessage(role=ROLE_USER, text="Hi"),
        ChatMessage(role=ROLE_ASSISTANT, text="Hello!"),
        {"role": ROLE_USER, "text": "Improve this"},
    ]

    payload = build_request(history)

    assert [item["role"] for item in payload["contents"]] == ["user", "model", "user"]


def test_history_round_trip():
    history = [
        ChatMessage(role=ROLE_USER, text="First"),
        ChatMessage(role=ROLE_ASSISTANT, text="Second"),
        ChatMessage(role=ROLE_USER, text="Third"),
        ChatMessage(role=ROLE_ASSISTANT, text=""),
        ChatMessage(role=ROLE_USER, text="Ünïcödé ✓"),
    ]

    payload = build_request(history)

    assert history_from_payload(payload) == [(m.role, m.text) for m in history]


def test_options_override_defaults():
    options = GenerationOptions(temperature=0.2, top_k=10, top_p=0.5, max_output_tokens=64)

    payload = build_request("x", options=options)

    assert payload["generationConfig"] == {
        "temperature": 0.2,
        "topK": 10,
        "topP": 0.5,
        "maxOutputTokens": 64,
    }


def test_system_instruction_and_context():
    payload = build_request(
        "x",
        system_instruction="You are a helpful writing assistant.",
        context={"client": "Ann", "job": "Logo", "empty": ""},
    )

    text = payload["systemInstruction"]["parts"][0]["text"]
    assert text.startswith("You are a helpful writing assistant.")
    assert "Conversation context:\n- client: Ann\n- job: Logo" in text
    assert "empty" not in text


def test_render_context_empty():
    assert render_context({}) == ""
    assert render_context({"a": None}) == ""


def test_file_parts_precede_text_of_last_user_turn():
    history = [
        ChatMessage(role=ROLE_USER, text="Earlier"),
        ChatMessage(role=ROLE_ASSISTANT, text="Reply"),
        ChatMessage(role=ROLE_USER, text="Describe this file"),
    ]
    files = [
        FileReference(
            name="files/abc", mime_type="application/pdf", uri="https://files/abc"
        )
    ]

    payload = build_request(history, files=files)

    assert payload["contents"][0]["parts"] == [{"text": "Earlier"}]
    assert payload["contents"][2]["parts"] == [
        {"fileData": {"fileUri": "https://files/abc", "mimeType": "application/pdf"}},
        {"text": "Describe this file"},
    ]


def test_unresolved_files_are_dropped(caplog):
    files = [
        FileReference(name="files/a", mime_type="image/png"),
        FileReference(name="files/b", mime_type="image/png", uri="https://files/b"),
    ]

    with caplog.at_level(logging.WARNING):
        payload = build_request("look", files=files)

    parts = payload["contents"][0]["parts"]
    assert len(parts) == 2
    assert parts[0]["fileData"]["fileUri"] == "https://files/b"
    assert "files/a" in caplog.text


def test_safety_settings_pass_through():
    settings = [{"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"}]

    payload = build_request("x", safety_settings=settings)

    assert payload["safetySettings"] == settings


def test_empty_history_rejected():
    with pytest.raises(ValueError):
        build_request([])


def test_unknown_role_rejected():
    with pytest.raises(ValueError, match="system"):
        build_request([{"role": "system", "text": "x"}])
