"""Assistant Core 顶层包。

该包提供对话助手的请求编排与流式处理核心，包括配置加载、领域模型、
任务分类、Provider 目录与请求构造、带重试与故障切换的调度、
响应流归一化、客户端流消费、会话控制与持久化存储等能力。
"""

from assistant_core.api.service import cancel_in_flight, load_conversation, send_message

__all__ = ["cancel_in_flight", "load_conversation", "send_message"]
