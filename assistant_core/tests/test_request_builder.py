import base64

import pytest

from assistant_core.domain.exceptions import BadRequest, PayloadTooLarge
from assistant_core.domain.models import Attachment, Turn
from assistant_core.providers.registry import DEEPSEEK, GATEWAY, GEMINI, ProviderDescriptor
from assistant_core.providers.request_builder import RequestBuilder


def _image(size: int, mime: str = "image/png") -> Attachment:
    return Attachment(data_base64=base64.b64encode(b"x" * size).decode("ascii"), mime_type=mime)


def test_chat_completions_payload_shape():
    builder = RequestBuilder()
    turns = [
        Turn(role="user", content="hi"),
        Turn(role="assistant", content="hello"),
        Turn(role="user", content="what is this?", attachments=(_image(3),)),
    ]
    req = builder.build(GATEWAY, "google/gemini-3-pro-preview", "SYS", turns, api_key="secret-key-123")
    assert req.url == GATEWAY.endpoint
    assert req.stream is True
    assert req.headers["Authorization"] == "Bearer secret-key-123"
    assert req.headers["Accept"] == "text/event-stream"
    msgs = req.payload["messages"]
    assert msgs[0] == {"role": "system", "content": "SYS"}
    assert [m["role"] for m in msgs[1:]] == ["user", "assistant", "user"]
    parts = msgs[3]["content"]
    assert parts[0] == {"type": "text", "text": "what is this?"}
    assert parts[1]["type"] == "image_url"
    assert parts[1]["image_url"]["url"].startswith("data:image/png;base64,")
    assert req.payload["model"] == "google/gemini-3-pro-preview"
    assert req.payload["stream"] is True


def test_personalization_carriers_are_stripped():
    builder = RequestBuilder()
    turns = [
        Turn(role="system", content="USER_NAME: Sam"),
        Turn(role="system", content="USER_STYLE: concise"),
        Turn(role="user", content="hey"),
    ]
    req = builder.build(GATEWAY, "m", "SYS", turns)
    contents = [m["content"] for m in req.payload["messages"]]
    assert contents == ["SYS", "hey"]


def test_context_window_keeps_latest_turns_in_order():
    builder = RequestBuilder(max_context_messages=2)
    turns = [Turn(role="user", content=str(i)) for i in range(5)]
    req = builder.build(GATEWAY, "m", "SYS", turns)
    assert [m["content"] for m in req.payload["messages"][1:]] == ["3", "4"]


def test_deepseek_reasoner_temperature():
    req = RequestBuilder().build(DEEPSEEK, "deepseek-reasoner", "SYS", [Turn(role="user", content="prove it")])
    assert req.payload["temperature"] == 0.1
    plain = RequestBuilder().build(DEEPSEEK, "deepseek-chat", "SYS", [Turn(role="user", content="hi")])
    assert "temperature" not in plain.payload


def test_generate_content_shape():
    turns = [
        Turn(role="user", content="look", attachments=(_image(4, "image/jpeg"),)),
        Turn(role="assistant", content="a cat"),
        Turn(role="user", content="sure?"),
    ]
    req = RequestBuilder().build(GEMINI, "gemini-2.0-flash", "SYS", turns, api_key="gm-key-0123456789")
    assert req.url == "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.0-flash:generateContent"
    assert req.stream is False
    assert req.headers["x-goog-api-key"] == "gm-key-0123456789"
    assert "Authorization" not in req.headers
    assert req.payload["system_instruction"] == {"parts": [{"text": "SYS"}]}
    contents = req.payload["contents"]
    assert [c["role"] for c in contents] == ["user", "model", "user"]
    assert contents[0]["parts"][1]["inline_data"]["mime_type"] == "image/jpeg"


def test_images_over_cap_are_rejected():
    builder = RequestBuilder(max_image_bytes=10)
    turns = [Turn(role="user", content="two", attachments=(_image(6), _image(6)))]
    with pytest.raises(PayloadTooLarge) as exc:
        builder.build(GATEWAY, "m", "SYS", turns)
    assert exc.value.code == "PAYLOAD_TOO_LARGE"
    assert exc.value.extra["total_bytes"] == 12
    assert isinstance(exc.value, BadRequest)


def test_non_image_attachment_rejected():
    turns = [Turn(role="user", content="pdf", attachments=(Attachment("aGk=", "application/pdf"),))]
    with pytest.raises(BadRequest) as exc:
        RequestBuilder().build(GATEWAY, "m", "SYS", turns)
    assert exc.value.code == "UNSUPPORTED_ATTACHMENT"


def test_builder_is_deterministic():
    turns = [Turn(role="user", content="same")]
    a = RequestBuilder().build(GATEWAY, "m", "SYS", turns)
    b = RequestBuilder().build(GATEWAY, "m", "SYS", turns)
    assert a == b


def test_unknown_kind_rejected():
    odd = ProviderDescriptor(
        id="odd",
        endpoint="https://odd.example.com",
        auth_scheme="bearer",
        models_by_category={},
        supports_streaming=False,
        kind="something_else",  # type: ignore[arg-type]
    )
    with pytest.raises(BadRequest):
        RequestBuilder().build(odd, "m", "SYS", [Turn(role="user", content="x")])
