import json

from assistant_core.domain.models import StreamEvent
from assistant_core.providers.normalizer import StreamNormalizer, encode_event, encode_events


FALLBACK = "fallback apology"
BLOCKED = "blocked apology"


def _normalizer():
    return StreamNormalizer(fallback_message=FALLBACK, blocked_message=BLOCKED)


def _sse(*payloads):
    out = b""
    for p in payloads:
        if p == "[DONE]":
            out += b"data: [DONE]\n\n"
        else:
            out += b"data: " + json.dumps(p).encode("utf-8") + b"\n\n"
    return out


def _delta(text):
    return {"choices": [{"delta": {"content": text}, "finish_reason": None}]}


def _kinds(events):
    return [e.kind for e in events]


def _assert_single_terminal(events):
    terminals = [i for i, e in enumerate(events) if e.is_terminal]
    assert len(terminals) == 1
    assert terminals[0] == len(events) - 1


def test_token_stream_deltas_and_done():
    body = b": ping\n\n" + _sse(_delta("Hel"), _delta("lo"), "[DONE]")
    events = list(_normalizer().normalize([body], "chat_completions"))
    assert events == [
        StreamEvent(kind="delta", text="Hel"),
        StreamEvent(kind="delta", text="lo"),
        StreamEvent(kind="done"),
    ]


def test_token_stream_split_inside_frame():
    body = _sse(_delta("Hel"), _delta("lo"), "[DONE]")
    for size in (1, 4, 9):
        chunks = [body[i:i + size] for i in range(0, len(body), size)]
        events = list(_normalizer().normalize(chunks, "chat_completions"))
        assert "".join(e.text for e in events if e.kind == "delta") == "Hello"
        _assert_single_terminal(events)


def test_empty_stream_yields_apology():
    events = list(_normalizer().normalize([b""], "chat_completions"))
    assert events == [StreamEvent(kind="delta", text=FALLBACK), StreamEvent(kind="done")]


def test_done_without_content_yields_apology():
    events = list(_normalizer().normalize([_sse("[DONE]")], "chat_completions"))
    assert events == [StreamEvent(kind="delta", text=FALLBACK), StreamEvent(kind="done")]


def test_cut_off_after_content_is_error_event():
    events = list(_normalizer().normalize([_sse(_delta("partial"))], "chat_completions"))
    assert _kinds(events) == ["delta", "error"]


def test_content_filter_before_content():
    blocked = {"choices": [{"delta": {}, "finish_reason": "content_filter"}]}
    events = list(_normalizer().normalize([_sse(blocked, "[DONE]")], "chat_completions"))
    assert events == [StreamEvent(kind="delta", text=BLOCKED), StreamEvent(kind="done")]


def test_upstream_error_frame():
    err = {"error": {"message": "overloaded"}}
    events = list(_normalizer().normalize([_sse(err)], "chat_completions"))
    assert events == [StreamEvent(kind="delta", text=FALLBACK), StreamEvent(kind="done")]
    events = list(_normalizer().normalize([_sse(_delta("a"), err)], "chat_completions"))
    assert _kinds(events) == ["delta", "error"]


def test_malformed_frame_is_error():
    body = b"data: {not json}\ndata: [DONE]\n\n"
    events = list(_normalizer().normalize([body], "chat_completions"))
    assert _kinds(events) == ["error"]


def test_nothing_after_terminal_event():
    body = _sse(_delta("a"), "[DONE]", _delta("ignored"))
    events = list(_normalizer().normalize([body], "chat_completions"))
    assert _kinds(events) == ["delta", "done"]


def test_single_shot_chat_completions_is_idempotent():
    body = json.dumps({"choices": [{"message": {"role": "assistant", "content": "full answer"}}]}).encode()
    first = list(_normalizer().normalize(body, "chat_completions", stream=False))
    second = list(_normalizer().normalize(body, "chat_completions", stream=False))
    assert first == second == [StreamEvent(kind="delta", text="full answer"), StreamEvent(kind="done")]


def test_single_shot_generate_content():
    body = json.dumps(
        {"candidates": [{"content": {"parts": [{"text": "Hello "}, {"text": "world"}]}, "finishReason": "STOP"}]}
    ).encode()
    events = list(_normalizer().normalize(body, "generate_content", stream=False))
    assert events == [StreamEvent(kind="delta", text="Hello world"), StreamEvent(kind="done")]


def test_single_shot_blocked_and_empty():
    blocked = json.dumps({"promptFeedback": {"blockReason": "SAFETY"}}).encode()
    events = list(_normalizer().normalize(blocked, "generate_content", stream=False))
    assert events == [StreamEvent(kind="delta", text=BLOCKED), StreamEvent(kind="done")]
    events = list(_normalizer().normalize(b"", "generate_content", stream=False))
    assert events == [StreamEvent(kind="delta", text=FALLBACK), StreamEvent(kind="done")]
    empty = json.dumps({"candidates": [{"content": {"parts": []}}]}).encode()
    events = list(_normalizer().normalize(empty, "generate_content", stream=False))
    assert events[0].text == FALLBACK


def test_encode_events_canonical_wire():
    assert encode_event(StreamEvent(kind="done")) == b"data: [DONE]\n\n"
    frame = encode_event(StreamEvent(kind="delta", text="hi"))
    assert frame.startswith(b"data: ") and frame.endswith(b"\n\n")
    assert json.loads(frame[len(b"data: "):]) == {"kind": "delta", "text": "hi"}
    wire = list(encode_events([StreamEvent(kind="error"), StreamEvent(kind="delta", text="late")]))
    assert wire == [b'data: {"kind": "error"}\n\n']
