"""从助手回答中提取提醒标记。

模型被要求以 `[REMINDER: title="..." time="ISO datetime"]` 的格式输出提醒，
这里把它们解析出来；时间无法解析或已经过去的标记会被忽略。
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

REMINDER_RE = re.compile(r'\[REMINDER:\s*title="([^"]+)"\s*time="([^"]+)"\]')


@dataclass(frozen=True)
class Reminder:
    title: str
    remind_at: datetime


def _parse_time(value: str) -> Optional[datetime]:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def extract_reminders(text: str, now: Optional[datetime] = None) -> List[Reminder]:
    now = now or datetime.now(timezone.utc)
    reminders: List[Reminder] = []
    for match in REMINDER_RE.finditer(text or ""):
        remind_at = _parse_time(match.group(2))
        if remind_at is None or remind_at <= now:
            continue
        reminders.append(Reminder(title=match.group(1).strip(), remind_at=remind_at))
    return reminders
