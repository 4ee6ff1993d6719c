"""请求构造器。

把与厂商无关的 Turn 列表转换为某个 Provider 需要的 HTTP 请求（ProviderRequest）：

1. 剔除个性化载体消息（这些内容已经折叠进 system prompt）。
2. 按 max_context_messages 截取最近的历史，保持原有顺序。
3. 图片附件以内联字段嵌入消息，不做单独上传；总字节超过上限时抛出 PayloadTooLarge，
   不会静默丢弃。
4. 按 ProviderDescriptor.kind 选择具体的 JSON 结构。

本模块没有副作用，同样的输入总是得到同样的请求。
"""

from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from assistant_core.config.settings import settings
from assistant_core.domain.exceptions import BadRequest, PayloadTooLarge
from assistant_core.domain.models import ProviderRequest, Turn
from assistant_core.prompts import is_personalization_turn
from assistant_core.providers.registry import ProviderDescriptor


# 个别模型需要额外的采样参数
MODEL_OVERRIDES: Mapping[str, Dict[str, Any]] = {
    "deepseek-reasoner": {"temperature": 0.1},
}


class RequestBuilder:
    """按 Provider kind 构造请求。"""

    def __init__(
        self,
        max_image_bytes: Optional[int] = None,
        max_context_messages: Optional[int] = None,
    ):
        self._max_image_bytes = max_image_bytes or settings.max_image_bytes
        self._max_context_messages = max_context_messages or settings.max_context_messages
        self._builders: Dict[str, Callable[..., ProviderRequest]] = {
            "chat_completions": self._build_chat_completions,
            "generate_content": self._build_generate_content,
        }

    def build(
        self,
        descriptor: ProviderDescriptor,
        model_id: str,
        system_prompt: str,
        turns: Sequence[Turn],
        api_key: Optional[str] = None,
    ) -> ProviderRequest:
        """构造发往 descriptor 的请求。

        Raises:
            PayloadTooLarge: 内联图片总字节超过上限。
            BadRequest: 附件不是图片，或 Provider kind 未知。
        """

        forwarded = self.prepare_turns(turns)
        self._check_attachments(forwarded)
        builder = self._builders.get(descriptor.kind)
        if builder is None:
            raise BadRequest(code="UNKNOWN_PROVIDER_KIND", message=f"Unsupported provider kind {descriptor.kind!r}")
        return builder(descriptor, model_id, system_prompt, forwarded, api_key)

    def prepare_turns(self, turns: Sequence[Turn]) -> List[Turn]:
        """剔除内部载体消息并截取上下文窗口。"""

        forwarded = [t for t in turns if not is_personalization_turn(t)]
        if len(forwarded) > self._max_context_messages:
            forwarded = forwarded[-self._max_context_messages:]
        return forwarded

    def _check_attachments(self, turns: Sequence[Turn]) -> None:
        total = 0
        for turn in turns:
            for att in turn.attachments:
                if not att.mime_type.startswith("image/"):
                    raise BadRequest(
                        code="UNSUPPORTED_ATTACHMENT",
                        message=f"Attachment type {att.mime_type!r} is not an image",
                    )
                total += att.byte_size
        if total > self._max_image_bytes:
            raise PayloadTooLarge(
                code="PAYLOAD_TOO_LARGE",
                message=f"Attached images total {total} bytes, limit is {self._max_image_bytes}",
                http_status=413,
                total_bytes=total,
                limit=self._max_image_bytes,
            )

    # ---- 各 kind 的具体实现 ----

    def _build_chat_completions(
        self,
        descriptor: ProviderDescriptor,
        model_id: str,
        system_prompt: str,
        turns: Sequence[Turn],
        api_key: Optional[str],
    ) -> ProviderRequest:
        messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for turn in turns:
            messages.append(self._turn_to_chat_message(turn))
        payload: Dict[str, Any] = {
            "model": model_id,
            "messages": messages,
            "stream": descriptor.supports_streaming,
        }
        payload.update(MODEL_OVERRIDES.get(model_id, {}))
        return ProviderRequest(
            provider_id=descriptor.id,
            model_id=model_id,
            url=descriptor.endpoint,
            headers=self._headers(descriptor, api_key),
            payload=payload,
            stream=descriptor.supports_streaming,
        )

    def _build_generate_content(
        self,
        descriptor: ProviderDescriptor,
        model_id: str,
        system_prompt: str,
        turns: Sequence[Turn],
        api_key: Optional[str],
    ) -> ProviderRequest:
        system_parts: List[Dict[str, Any]] = [{"text": system_prompt}]
        contents: List[Dict[str, Any]] = []
        for turn in turns:
            if turn.role == "system":
                system_parts.append({"text": turn.content})
                continue
            parts: List[Dict[str, Any]] = []
            if turn.content:
                parts.append({"text": turn.content})
            for att in turn.attachments:
                parts.append({"inline_data": {"mime_type": att.mime_type, "data": att.data_base64}})
            contents.append({"role": "model" if turn.role == "assistant" else "user", "parts": parts})
        payload: Dict[str, Any] = {
            "system_instruction": {"parts": system_parts},
            "contents": contents,
        }
        return ProviderRequest(
            provider_id=descriptor.id,
            model_id=model_id,
            url=f"{descriptor.endpoint}/models/{model_id}:generateContent",
            headers=self._headers(descriptor, api_key),
            payload=payload,
            stream=False,
        )

    @staticmethod
    def _turn_to_chat_message(turn: Turn) -> Dict[str, Any]:
        if not turn.attachments:
            return {"role": turn.role, "content": turn.content}
        parts: List[Dict[str, Any]] = []
        if turn.content:
            parts.append({"type": "text", "text": turn.content})
        for att in turn.attachments:
            parts.append({"type": "image_url", "image_url": {"url": att.data_url}})
        return {"role": turn.role, "content": parts}

    @staticmethod
    def _headers(descriptor: ProviderDescriptor, api_key: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if descriptor.supports_streaming:
            headers["Accept"] = "text/event-stream"
        if api_key:
            if descriptor.auth_scheme == "bearer":
                headers["Authorization"] = f"Bearer {api_key}"
            else:
                headers[descriptor.api_key_header] = api_key
        return headers
