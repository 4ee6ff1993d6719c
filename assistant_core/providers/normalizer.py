"""响应归一化。

把 Provider 的原始响应体转换为统一的 StreamEvent 序列，客户端因此可以用同一种方式
处理所有 Provider：

- 逐 token 流式的 Provider：响应体是一行一帧的 SSE 帧，注释帧忽略，终止标记产出 done，
  JSON 帧中的增量文本产出 delta。解析失败的帧会与后续到达的行拼接后重试，
  重组后仍然无法解析的帧才产出 error。
- 一次性返回的 Provider：响应体是一个 JSON 对象，合成为 delta(全文) + done 两个事件。

失败策略：上游响应为空、在任何内容之前中断、或被内容安全策略拦截时，产出一条致歉的
delta + done，原始错误只写日志，不展示给用户。已有内容之后中断则产出 error，
由客户端按“部分回答”处理。

任何序列都以恰好一个 done 或 error 结束，之后不再有事件。
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from assistant_core.config.settings import settings
from assistant_core.domain.models import StreamEvent
from assistant_core.infrastructure.logging.logger import log_event
from assistant_core.providers.registry import ProviderKind
from assistant_core.streaming.framing import DATA_PREFIX, DONE_SENTINEL, Frame, SSEFrameReader


BLOCKED_FINISH_REASONS = {"content_filter", "SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII"}

DONE = StreamEvent(kind="done")

Body = Union[bytes, str, Iterable[bytes]]


@dataclass
class _Extracted:
    text: str = ""
    blocked: bool = False
    error: Optional[str] = None


def _extract_chat_completions(data: Dict[str, Any], streaming: bool) -> _Extracted:
    if data.get("error"):
        return _Extracted(error=json.dumps(data["error"], ensure_ascii=False, default=str))
    choices = data.get("choices") or []
    first = choices[0] if choices and isinstance(choices[0], dict) else {}
    body = first.get("delta" if streaming else "message") or {}
    text = body.get("content") if isinstance(body, dict) else None
    return _Extracted(
        text=text if isinstance(text, str) else "",
        blocked=first.get("finish_reason") in BLOCKED_FINISH_REASONS,
    )


def _extract_generate_content(data: Dict[str, Any], streaming: bool) -> _Extracted:
    if data.get("error"):
        return _Extracted(error=json.dumps(data["error"], ensure_ascii=False, default=str))
    if (data.get("promptFeedback") or {}).get("blockReason"):
        return _Extracted(blocked=True)
    candidates = data.get("candidates") or []
    first = candidates[0] if candidates and isinstance(candidates[0], dict) else {}
    parts = (first.get("content") or {}).get("parts") or []
    text = "".join(p.get("text", "") for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str))
    return _Extracted(text=text, blocked=first.get("finishReason") in BLOCKED_FINISH_REASONS)


_EXTRACTORS = {
    "chat_completions": _extract_chat_completions,
    "generate_content": _extract_generate_content,
}


class StreamNormalizer:
    """把原始响应体转换为 StreamEvent 序列。"""

    def __init__(
        self,
        fallback_message: Optional[str] = None,
        blocked_message: Optional[str] = None,
        log_ctx: Optional[Dict[str, Any]] = None,
    ):
        self._fallback_message = fallback_message or settings.fallback_message
        self._blocked_message = blocked_message or settings.blocked_message
        self._log_ctx = dict(log_ctx or {})

    def normalize(self, body: Body, provider_kind: ProviderKind, stream: bool = True) -> Iterator[StreamEvent]:
        extractor = _EXTRACTORS[provider_kind]
        if stream:
            return self._normalize_token_stream(_as_chunks(body), extractor)
        return iter(self._normalize_single_shot(_as_bytes(body), extractor))

    # ---- 逐 token 流 ----

    def _normalize_token_stream(self, chunks: Iterable[bytes], extractor) -> Iterator[StreamEvent]:
        reader = SSEFrameReader()
        emitted = False
        for frames in _read_frames(reader, chunks):
            for frame in frames:
                if frame.kind == "done":
                    if not emitted:
                        self._log(logging.WARNING, "Upstream finished without content")
                        yield StreamEvent(kind="delta", text=self._fallback_message)
                    yield DONE
                    return
                if frame.kind == "malformed":
                    self._log(logging.ERROR, "Malformed upstream frame", raw=frame.raw[:200])
                    yield StreamEvent(kind="error", text="malformed_frame")
                    return
                if not isinstance(frame.data, dict):
                    continue
                extracted = extractor(frame.data, True)
                if extracted.error:
                    self._log(logging.ERROR, "Upstream error frame", error=extracted.error[:500])
                    if emitted:
                        yield StreamEvent(kind="error", text="upstream_error")
                    else:
                        yield StreamEvent(kind="delta", text=self._fallback_message)
                        yield DONE
                    return
                if extracted.text:
                    emitted = True
                    yield StreamEvent(kind="delta", text=extracted.text)
                if extracted.blocked:
                    self._log(logging.WARNING, "Upstream content blocked", partial=emitted)
                    if not emitted:
                        yield StreamEvent(kind="delta", text=self._blocked_message)
                    yield DONE
                    return
        if emitted:
            self._log(logging.WARNING, "Upstream stream cut off after content")
            yield StreamEvent(kind="error", text="stream_truncated")
            return
        self._log(logging.WARNING, "Upstream stream empty or cut off before content")
        yield StreamEvent(kind="delta", text=self._fallback_message)
        yield DONE

    # ---- 一次性响应 ----

    def _normalize_single_shot(self, body: bytes, extractor) -> List[StreamEvent]:
        raw = body.strip()
        if not raw:
            self._log(logging.WARNING, "Upstream body empty")
            return [StreamEvent(kind="delta", text=self._fallback_message), DONE]
        try:
            data = json.loads(raw)
        except ValueError:
            self._log(logging.ERROR, "Malformed upstream body", raw=raw[:200].decode("utf-8", "replace"))
            return [StreamEvent(kind="error", text="malformed_body")]
        if not isinstance(data, dict):
            return [StreamEvent(kind="error", text="malformed_body")]
        extracted = extractor(data, False)
        if extracted.error:
            self._log(logging.ERROR, "Upstream error body", error=extracted.error[:500])
            return [StreamEvent(kind="delta", text=self._fallback_message), DONE]
        if extracted.blocked and not extracted.text:
            self._log(logging.WARNING, "Upstream content blocked")
            return [StreamEvent(kind="delta", text=self._blocked_message), DONE]
        if not extracted.text:
            self._log(logging.WARNING, "Upstream answer empty")
            return [StreamEvent(kind="delta", text=self._fallback_message), DONE]
        return [StreamEvent(kind="delta", text=extracted.text), DONE]

    def _log(self, level: int, message: str, **fields: Any) -> None:
        log_event(level, message, self._log_ctx, **fields)


def _read_frames(reader: SSEFrameReader, chunks: Iterable[bytes]) -> Iterator[List[Frame]]:
    for chunk in chunks:
        yield reader.feed(chunk)
    yield reader.finish()


def _as_chunks(body: Body) -> Iterable[bytes]:
    if isinstance(body, (bytes, bytearray)):
        return [bytes(body)]
    if isinstance(body, str):
        return [body.encode("utf-8")]
    return body


def _as_bytes(body: Body) -> bytes:
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    if isinstance(body, str):
        return body.encode("utf-8")
    return b"".join(body)


def encode_event(event: StreamEvent) -> bytes:
    """把一个 StreamEvent 编码为规范的线上帧（换行结尾，空行分隔）。"""

    if event.kind == "done":
        return f"{DATA_PREFIX} {DONE_SENTINEL}\n\n".encode("utf-8")
    payload: Dict[str, Any] = {"kind": event.kind}
    if event.text is not None:
        payload["text"] = event.text
    return f"{DATA_PREFIX} {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def encode_events(events: Iterable[StreamEvent]) -> Iterator[bytes]:
    for event in events:
        yield encode_event(event)
        if event.is_terminal:
            return
