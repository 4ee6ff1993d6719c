from assistant_core.domain.models import StreamEvent
from assistant_core.providers.normalizer import encode_events
from assistant_core.streaming.consumer import CancellationToken, ClientStreamConsumer


class Recorder:
    def __init__(self):
        self.deltas = []
        self.done = []
        self.errors = []

    def on_delta(self, text):
        self.deltas.append(text)

    def on_done(self, text, truncated):
        self.done.append((text, truncated))

    def on_error(self, err):
        self.errors.append(err)


def _consume(chunks, cancel=None):
    rec = Recorder()
    outcome = ClientStreamConsumer().consume(chunks, rec.on_delta, rec.on_done, rec.on_error, cancel=cancel)
    return rec, outcome


def _wire(*events):
    return b"".join(encode_events(events))


def test_hello_split_inside_frame():
    body = _wire(
        StreamEvent(kind="delta", text="Hel"),
        StreamEvent(kind="delta", text="lo"),
        StreamEvent(kind="done"),
    )
    cut = body.index(b"lo") - 3
    rec, outcome = _consume([body[:cut], body[cut:]])
    assert rec.deltas == ["Hel", "Hello"]
    assert rec.done == [("Hello", False)]
    assert outcome.status == "done"
    assert rec.errors == []


def test_any_chunking_gives_same_result():
    body = _wire(
        StreamEvent(kind="delta", text="多字节"),
        StreamEvent(kind="delta", text=" text\nwith newline"),
        StreamEvent(kind="done"),
    )
    expected = "多字节 text\nwith newline"
    for size in (1, 2, 3, 5, 7, 64):
        chunks = [body[i:i + size] for i in range(0, len(body), size)]
        rec, outcome = _consume(chunks)
        assert rec.done == [(expected, False)]
        assert outcome.text == expected


def test_transport_end_with_content_is_truncated_success():
    body = _wire(StreamEvent(kind="delta", text="partial"))
    rec, outcome = _consume([body])
    assert rec.done == [("partial", True)]
    assert outcome.truncated
    assert rec.errors == []


def test_transport_end_without_content_reports_error():
    rec, outcome = _consume([b": keep-alive\n\n"])
    assert rec.done == []
    assert len(rec.errors) == 1
    assert rec.errors[0].code == "STREAM_EMPTY"
    assert outcome.status == "error"


def test_error_event_after_content_is_truncated():
    body = _wire(StreamEvent(kind="delta", text="abc"), StreamEvent(kind="error", text="stream_truncated"))
    rec, outcome = _consume([body])
    assert rec.done == [("abc", True)]
    assert outcome.status == "truncated"


def test_nothing_after_done_is_processed():
    body = _wire(StreamEvent(kind="delta", text="a"), StreamEvent(kind="done")) + b'data: {"kind": "delta", "text": "zzz"}\n\n'
    rec, outcome = _consume([body])
    assert rec.deltas == ["a"]
    assert rec.done == [("a", False)]


def test_cancel_stops_callbacks_and_closes_source():
    cancel = CancellationToken()
    closed = []

    def source():
        try:
            yield _wire(StreamEvent(kind="delta", text="one"))
            cancel.cancel()
            yield _wire(StreamEvent(kind="delta", text="two"))
            yield _wire(StreamEvent(kind="done"))
        finally:
            closed.append(True)

    rec, outcome = _consume(source(), cancel=cancel)
    assert rec.deltas == ["one"]
    assert rec.done == []
    assert rec.errors == []
    assert outcome.status == "cancelled"
    assert closed == [True]


def test_cancellation_token_wait():
    token = CancellationToken()
    assert token.wait(0) is False
    token.cancel()
    assert token.cancelled
    assert token.wait(5) is True
