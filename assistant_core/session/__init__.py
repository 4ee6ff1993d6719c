"""会话层：ChatSessionController 与提醒标记解析。"""

from assistant_core.session.controller import ChatSession, ChatSessionController, SendResult, SessionState
from assistant_core.session.reminders import Reminder, extract_reminders

__all__ = [
    "ChatSession",
    "ChatSessionController",
    "SendResult",
    "SessionState",
    "Reminder",
    "extract_reminders",
]
