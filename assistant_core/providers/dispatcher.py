"""带重试与故障切换的调度器。

对 RequestPlan 中的候选链逐个 Provider 发起 HTTP 调用：

1. 每个 Provider 最多尝试 max_retries 次，每次尝试都有 http_timeout 秒的整体截止时间，
   从发出请求算起，覆盖读取响应体的全过程。
2. 按响应分类：
   - 2xx：成功。流式 Provider 在收到响应头后即返回，响应体惰性读取；
     一次性 Provider 立即读完响应体，非空且不是 JSON 视为 BadRequest。
   - 429：可重试，等待 base × attempt × 2 后重试同一 Provider。
   - ≥500 / 408 / 网络错误：可重试，等待 base × attempt 后重试同一 Provider。
   - 401/403、402/404：对当前 Provider 致命，放弃剩余尝试，切换到下一个 Provider。
   - 400 及其他 4xx：对整个请求致命，抛出 BadRequest，不切换。
3. 可重试错误用尽后切换到下一个 Provider；整条链都失败时抛出 DispatchExhausted，
   携带最后一次错误分类，调用方不应再重试。

除网络调用外没有副作用，两次 dispatch 之间不共享状态。
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

import httpx

from assistant_core.config.settings import settings
from assistant_core.domain.exceptions import (
    AuthError,
    BadRequest,
    BusinessError,
    DispatchExhausted,
    NetworkError,
    ProviderUnavailable,
    RateLimitError,
    RequestCancelled,
    ServerError,
)
from assistant_core.domain.models import DispatchAttempt, ProviderRequest, RequestPlan, StreamEvent
from assistant_core.infrastructure.logging.logger import log_event
from assistant_core.providers.normalizer import StreamNormalizer
from assistant_core.providers.registry import ProviderCatalog, ProviderDescriptor
from assistant_core.providers.request_builder import RequestBuilder
from assistant_core.streaming.consumer import CancellationToken


def classify_status(status_code: int, body: str = "", **extra: Any) -> Optional[BusinessError]:
    """把 HTTP 状态码映射为错误分类；2xx 返回 None。"""

    if 200 <= status_code < 300:
        return None
    detail = body[:500]
    extra.setdefault("status_code", status_code)
    if status_code == 429:
        return RateLimitError(code="RATE_LIMIT", message="Provider rate limit", http_status=429, detail=detail, **extra)
    if status_code in (401, 403):
        return AuthError(code="AUTH_ERROR", message="Provider rejected credentials", http_status=status_code, detail=detail, **extra)
    if status_code in (402, 404):
        return ProviderUnavailable(
            code="PROVIDER_UNAVAILABLE", message="Provider cannot serve this request", http_status=status_code, detail=detail, **extra
        )
    if status_code >= 500 or status_code == 408:
        return ServerError(code="SERVER_ERROR", message=f"Provider returned {status_code}", http_status=status_code, detail=detail, **extra)
    return BadRequest(code="BAD_REQUEST", message=f"Provider rejected the request ({status_code})", http_status=status_code, detail=detail, **extra)


class DispatchResult:
    """一次成功调度的结果。

    events() 只能迭代一次；无论是否迭代完毕，调用方都应调用 close()（或使用 with 语句）
    以释放底层连接。
    """

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        model_id: str,
        attempts: List[DispatchAttempt],
        events: Iterator[StreamEvent],
        closer: Optional[Callable[[], None]] = None,
    ):
        self.descriptor = descriptor
        self.model_id = model_id
        self.attempts = attempts
        self._events = events
        self._closer = closer
        self._closed = False

    @property
    def provider_id(self) -> str:
        return self.descriptor.id

    def events(self) -> Iterator[StreamEvent]:
        return self._events

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        close_events = getattr(self._events, "close", None)
        if close_events is not None:
            close_events()
        if self._closer is not None:
            self._closer()

    def __enter__(self) -> "DispatchResult":
        return self

    def __exit__(self, *exc) -> bool:
        self.close()
        return False


class _StreamingBody:
    """已收到 2xx 响应头、响应体尚未读取的流式响应。"""

    def __init__(self, client: httpx.Client, response: httpx.Response):
        self.client = client
        self.response = response

    def close(self) -> None:
        self.response.close()
        self.client.close()


class RetryingDispatcher:
    """按候选链执行调用、重试与故障切换。"""

    def __init__(
        self,
        catalog: ProviderCatalog,
        builder: Optional[RequestBuilder] = None,
        normalizer: Optional[StreamNormalizer] = None,
        cfg=settings,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._catalog = catalog
        self._builder = builder or RequestBuilder()
        self._normalizer = normalizer
        self._cfg = cfg
        # 未注入 sleep 时，有取消令牌则用令牌等待，以便取消能打断退避
        self._sleep = sleep
        self._clock = clock or time.monotonic

    @property
    def catalog(self) -> ProviderCatalog:
        return self._catalog

    def dispatch(
        self,
        plan: RequestPlan,
        cancel: Optional[CancellationToken] = None,
        log_ctx: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        """执行调度，返回第一个成功的 Provider 的事件流。

        Raises:
            BadRequest: 请求本身无效，不会切换 Provider。
            RequestCancelled: 调度过程中被取消。
            DispatchExhausted: 整条候选链均失败。
        """

        ctx = dict(log_ctx or {})
        ctx.setdefault("category", plan.category.value)
        max_retries = self._cfg.max_retries
        attempts: List[DispatchAttempt] = []
        last_error: Optional[BusinessError] = None

        for index, (descriptor, model_id) in enumerate(plan.candidates):
            request = self._builder.build(
                descriptor,
                model_id,
                plan.system_prompt,
                plan.turns,
                api_key=self._catalog.api_key_for(descriptor),
            )
            for attempt in range(1, max_retries + 1):
                self._raise_if_cancelled(cancel, attempts, ctx)
                started = self._clock()
                deadline = started + self._cfg.http_timeout
                try:
                    body = self._attempt(request, deadline)
                except BusinessError as exc:
                    record = self._record(attempts, request, attempt, started, exc, ctx)
                    if isinstance(exc, BadRequest):
                        exc.extra.setdefault("attempts", list(attempts))
                        raise
                    last_error = exc
                    if not exc.retryable:
                        break
                    if attempt < max_retries:
                        delay = self._backoff_delay(exc, attempt)
                        log_event(
                            logging.INFO,
                            "Backing off before retry",
                            ctx,
                            provider=record.provider_id,
                            model=record.model_id,
                            attempt=attempt,
                            delay_s=delay,
                        )
                        self._pause(delay, cancel, attempts, ctx)
                    continue
                self._record(attempts, request, attempt, started, None, ctx)
                return self._result(descriptor, model_id, attempts, body, cancel, deadline, ctx)

            if index + 1 < len(plan.candidates):
                nxt = plan.candidates[index + 1][0]
                log_event(
                    logging.WARNING,
                    "Failing over to next provider",
                    ctx,
                    provider=descriptor.id,
                    next_provider=nxt.id,
                    error_code=last_error.code if last_error else None,
                )

        log_event(
            logging.ERROR,
            "All providers exhausted",
            ctx,
            attempts=len(attempts),
            error_code=last_error.code if last_error else None,
        )
        raise DispatchExhausted(
            code="DISPATCH_EXHAUSTED",
            message="All providers failed",
            http_status=503,
            last_error=last_error,
            attempts=attempts,
        )

    # ---- 单次尝试 ----

    def _attempt(self, request: ProviderRequest, deadline: float) -> Union[_StreamingBody, bytes]:
        """执行一次 HTTP 调用；失败时抛出分类后的 BusinessError。超过 deadline 视为网络超时。"""

        client = httpx.Client(timeout=self._cfg.http_timeout, trust_env=False)
        try:
            http_request = client.build_request("POST", request.url, json=request.payload, headers=request.headers)
            response = client.send(http_request, stream=True)
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            client.close()
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or e.__class__.__name__)

        error = classify_status(response.status_code, _read_error_text(response))
        if error is None and self._clock() >= deadline:
            error = _timeout_error(self._cfg.http_timeout)
        if error is not None:
            response.close()
            client.close()
            raise error

        if request.stream:
            return _StreamingBody(client, response)

        chunks: List[bytes] = []
        try:
            for chunk in response.iter_bytes():
                chunks.append(chunk)
                if self._clock() >= deadline:
                    raise _timeout_error(self._cfg.http_timeout)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or e.__class__.__name__)
        finally:
            response.close()
            client.close()
        body = b"".join(chunks)
        if body.strip():
            try:
                json.loads(body)
            except ValueError:
                raise BadRequest(code="MALFORMED_BODY", message="Provider returned a non-JSON body", detail=body[:200])
        return body

    def _result(
        self,
        descriptor: ProviderDescriptor,
        model_id: str,
        attempts: List[DispatchAttempt],
        body: Union[_StreamingBody, bytes],
        cancel: Optional[CancellationToken],
        deadline: float,
        ctx: Dict[str, Any],
    ) -> DispatchResult:
        event_ctx = dict(ctx, provider=descriptor.id, model=model_id)
        normalizer = self._normalizer or StreamNormalizer(log_ctx=event_ctx)
        if isinstance(body, _StreamingBody):
            chunks = _iter_body(body.response, cancel, event_ctx, deadline, self._clock)
            events = normalizer.normalize(chunks, descriptor.kind, stream=True)
            return DispatchResult(descriptor, model_id, attempts, events, closer=body.close)
        events = normalizer.normalize(body, descriptor.kind, stream=False)
        return DispatchResult(descriptor, model_id, attempts, events)

    # ---- 退避与取消 ----

    def _backoff_delay(self, error: BusinessError, attempt: int) -> float:
        base = self._cfg.retry_base_delay
        if isinstance(error, RateLimitError):
            return base * attempt * 2
        return base * attempt

    def _pause(
        self,
        delay: float,
        cancel: Optional[CancellationToken],
        attempts: List[DispatchAttempt],
        ctx: Dict[str, Any],
    ) -> None:
        if self._sleep is not None:
            self._sleep(delay)
        elif cancel is not None:
            cancel.wait(delay)
        else:
            time.sleep(delay)
        self._raise_if_cancelled(cancel, attempts, ctx)

    @staticmethod
    def _raise_if_cancelled(
        cancel: Optional[CancellationToken],
        attempts: List[DispatchAttempt],
        ctx: Dict[str, Any],
    ) -> None:
        if cancel is not None and cancel.cancelled:
            log_event(logging.INFO, "Dispatch cancelled", ctx, attempts=len(attempts))
            raise RequestCancelled(code="CANCELLED", message="Request cancelled", http_status=499, attempts=list(attempts))

    def _record(
        self,
        attempts: List[DispatchAttempt],
        request: ProviderRequest,
        attempt: int,
        started: float,
        error: Optional[BusinessError],
        ctx: Dict[str, Any],
    ) -> DispatchAttempt:
        elapsed_ms = int((self._clock() - started) * 1000)
        if error is None:
            outcome = "success"
        elif error.retryable:
            outcome = "retryable-failure"
        else:
            outcome = "fatal-failure"
        record = DispatchAttempt(
            provider_id=request.provider_id,
            model_id=request.model_id,
            attempt_number=attempt,
            outcome=outcome,
            elapsed_ms=elapsed_ms,
            status_code=error.extra.get("status_code") if error else None,
            error_code=error.code if error else None,
        )
        attempts.append(record)
        fields: Dict[str, Any] = {
            "provider": record.provider_id,
            "model": record.model_id,
            "attempt": record.attempt_number,
            "outcome": record.outcome,
            "status": record.status_code,
            "error_code": record.error_code,
            "elapsed_ms": record.elapsed_ms,
        }
        if error is not None:
            fields["error"] = error.message
            detail = error.extra.get("detail")
            if detail:
                fields["detail"] = detail if isinstance(detail, str) else repr(detail)
        log_event(logging.INFO if error is None else logging.WARNING, "Dispatch attempt", ctx, **fields)
        return record


def _timeout_error(timeout: float) -> NetworkError:
    return NetworkError(code="TIMEOUT", message=f"Provider call exceeded {timeout}s", timeout_s=timeout)


def _read_error_text(response: httpx.Response) -> str:
    """读取错误响应体用于日志；成功响应不读取。"""

    if 200 <= response.status_code < 300:
        return ""
    try:
        response.read()
        return response.text
    except httpx.HTTPError:
        return ""


def _iter_body(
    response: httpx.Response,
    cancel: Optional[CancellationToken],
    log_ctx: Dict[str, Any],
    deadline: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> Iterator[bytes]:
    """逐块读取流式响应体；传输中断或超过 deadline 时视为流结束，交给归一化层处理。"""

    try:
        for chunk in response.iter_bytes():
            if cancel is not None and cancel.cancelled:
                return
            if deadline is not None and clock() >= deadline:
                log_event(logging.WARNING, "Stream exceeded attempt deadline", log_ctx)
                return
            if chunk:
                yield chunk
    except httpx.RequestError as e:
        log_event(logging.WARNING, "Stream transport error", log_ctx, error=str(e) or e.__class__.__name__)
