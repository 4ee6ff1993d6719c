"""客户端流消费者。

逐块读取规范化后的事件流（见 providers.normalizer.encode_events），拼装进行中的助手消息：

- 每个 delta 追加到累加器后，以“到目前为止的完整文本”回调 on_delta，
  调用方只需整体替换显示内容；
- 读到终止标记时回调 on_done(text, truncated=False) 并停止读取；
- 传输在没有终止标记的情况下结束（或收到 error 事件）：累加器非空则视为部分成功，
  on_done(text, truncated=True)；为空则回调 on_error。

单线程、拉取式：每次只读一个分块，处理完再读下一个。取消令牌可以在其他线程触发，
触发后立即关闭底层分块迭代器，且不再产生任何回调。
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Literal, Optional, Union

from assistant_core.domain.exceptions import BusinessError, NetworkError
from assistant_core.infrastructure.logging.logger import log_event
from assistant_core.streaming.framing import Frame, SSEFrameReader


ConsumeStatus = Literal["done", "truncated", "error", "cancelled"]


class CancellationToken:
    """可跨线程触发的取消信号。"""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """最多等待 timeout 秒；期间被取消则返回 True。"""

        return self._event.wait(timeout)


@dataclass
class ConsumeOutcome:
    status: ConsumeStatus
    text: str = ""

    @property
    def truncated(self) -> bool:
        return self.status == "truncated"


class ClientStreamConsumer:
    """读取规范化事件流并驱动回调。"""

    def __init__(self, log_ctx: Optional[dict] = None):
        self._log_ctx = dict(log_ctx or {})

    def consume(
        self,
        chunks: Iterable[Union[bytes, str]],
        on_delta: Callable[[str], None],
        on_done: Callable[[str, bool], None],
        on_error: Callable[[BusinessError], None],
        cancel: Optional[CancellationToken] = None,
    ) -> ConsumeOutcome:
        reader = SSEFrameReader()
        accumulated = ""
        iterator = iter(chunks)

        def cancelled() -> bool:
            return cancel is not None and cancel.cancelled

        try:
            for chunk in iterator:
                if cancelled():
                    return self._cancelled(accumulated)
                for frame in reader.feed(chunk):
                    if cancelled():
                        return self._cancelled(accumulated)
                    step = self._apply(frame, accumulated)
                    if step is None:
                        continue
                    kind, accumulated = step
                    if kind == "delta":
                        on_delta(accumulated)
                    elif kind == "done":
                        on_done(accumulated, False)
                        return ConsumeOutcome(status="done", text=accumulated)
                    else:
                        return self._finish_without_sentinel(accumulated, on_done, on_error, "error event")
            if cancelled():
                return self._cancelled(accumulated)
            for frame in reader.finish():
                step = self._apply(frame, accumulated)
                if step is None:
                    continue
                kind, accumulated = step
                if kind == "delta":
                    on_delta(accumulated)
                elif kind == "done":
                    on_done(accumulated, False)
                    return ConsumeOutcome(status="done", text=accumulated)
                else:
                    break
            return self._finish_without_sentinel(accumulated, on_done, on_error, "transport ended")
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

    def _apply(self, frame: Frame, accumulated: str) -> Optional[tuple]:
        """把一帧应用到累加器，返回 (kind, 新文本)；无需处理的帧返回 None。"""

        if frame.kind == "done":
            return "done", accumulated
        if frame.kind == "malformed":
            log_event(logging.WARNING, "Skipped malformed stream frame", self._log_ctx, raw=frame.raw[:200])
            return None
        data = frame.data
        if not isinstance(data, dict):
            return None
        kind = data.get("kind")
        if kind == "delta":
            text = data.get("text") or ""
            if not text:
                return None
            return "delta", accumulated + text
        if kind == "done":
            return "done", accumulated
        if kind == "error":
            return "error", accumulated
        return None

    def _finish_without_sentinel(
        self,
        accumulated: str,
        on_done: Callable[[str, bool], None],
        on_error: Callable[[BusinessError], None],
        reason: str,
    ) -> ConsumeOutcome:
        if accumulated:
            log_event(
                logging.WARNING,
                "Stream ended without terminal marker, keeping partial answer",
                self._log_ctx,
                reason=reason,
                chars=len(accumulated),
            )
            on_done(accumulated, True)
            return ConsumeOutcome(status="truncated", text=accumulated)
        log_event(logging.WARNING, "Stream ended without any content", self._log_ctx, reason=reason)
        on_error(NetworkError(code="STREAM_EMPTY", message=f"Stream {reason} before any content"))
        return ConsumeOutcome(status="error")

    def _cancelled(self, accumulated: str) -> ConsumeOutcome:
        log_event(logging.INFO, "Stream consumption cancelled", self._log_ctx, chars=len(accumulated))
        return ConsumeOutcome(status="cancelled", text=accumulated)
