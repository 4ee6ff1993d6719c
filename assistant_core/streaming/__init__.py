"""流式分帧与客户端消费。

- framing: 增量解码 + 按行分帧（支持跨分块、跨行的帧重组）。
- consumer: ClientStreamConsumer 与 CancellationToken。
"""

from assistant_core.streaming.consumer import CancellationToken, ClientStreamConsumer, ConsumeOutcome

__all__ = ["CancellationToken", "ClientStreamConsumer", "ConsumeOutcome"]
