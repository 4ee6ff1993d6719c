"""系统提示词构造。

所有 Provider 共用同一条提示词构造路径：从 prompts/<locale> 目录读取模板，
再把个性化信息（称呼、回答风格）与任务类别对应的说明折叠进去。

个性化信息由 UI 以“载体消息”的形式放在历史中（role=system，内容以
USER_NAME: / USER_STYLE: 开头），在这里被读取，随后由 RequestBuilder 剔除，
不会原样转发给 Provider。
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

from assistant_core.domain.models import TaskCategory, Turn


PROMPTS_DIR = Path(__file__).resolve().parent

USER_NAME_PREFIX = "USER_NAME:"
USER_STYLE_PREFIX = "USER_STYLE:"
PERSONALIZATION_PREFIXES = (USER_NAME_PREFIX, USER_STYLE_PREFIX)

STYLE_INSTRUCTIONS = {
    "balanced": "Be helpful and conversational.",
    "friendly": "Be warm, friendly, and casual. Use a conversational tone.",
    "professional": "Be formal and professional. Use clear, precise language.",
    "concise": "Be brief and to the point. Give short, direct answers.",
    "detailed": "Be thorough and comprehensive. Provide detailed explanations with examples.",
}

TASK_INSTRUCTIONS = {
    TaskCategory.VISION: """
VISION ANALYSIS MODE:
- Carefully analyze the image(s) provided
- If it's a diagram or chart, explain it clearly
- If it's a math problem or text, solve or transcribe it
- Extract any text (OCR) when relevant
""",
    TaskCategory.REASONING: """
PROBLEM-SOLVING MODE:
- Break down complex problems step by step
- Show your work and reasoning clearly
- For code: explain the logic, then provide the solution
- Give a clear final answer
""",
    TaskCategory.DOCUMENT: """
DOCUMENT ANALYSIS MODE:
- Answer based on the document content provided in the context
- Quote relevant sections when helpful
""",
    TaskCategory.SEARCH: """
LIVE SEARCH MODE:
- Use the search results provided in the context
- Cite sources and note when information might be time-sensitive
""",
    TaskCategory.TEXT: "",
}


@dataclass
class Personalization:
    """用户个性化设置（称呼与回答风格）。"""

    name: Optional[str] = None
    style: str = "balanced"


def is_personalization_turn(turn: Turn) -> bool:
    return turn.role == "system" and (turn.content or "").startswith(PERSONALIZATION_PREFIXES)


def extract_personalization(turns: Sequence[Turn], default: Optional[Personalization] = None) -> Personalization:
    """从载体消息中读取个性化设置，载体缺失时使用 default。"""

    result = Personalization(
        name=default.name if default else None,
        style=default.style if default else "balanced",
    )
    for turn in turns:
        if turn.role != "system":
            continue
        content = turn.content or ""
        if content.startswith(USER_NAME_PREFIX):
            result.name = content[len(USER_NAME_PREFIX):].strip() or None
        elif content.startswith(USER_STYLE_PREFIX):
            result.style = content[len(USER_STYLE_PREFIX):].strip() or "balanced"
    return result


def load_prompt_template(locale: str = "en") -> str:
    fname = PROMPTS_DIR / locale / "assistant_system.md"
    return fname.read_text(encoding="utf-8")


def build_system_prompt(
    category: TaskCategory,
    personalization: Optional[Personalization] = None,
    now: Optional[datetime] = None,
    locale: str = "en",
) -> str:
    """构造系统提示词。"""

    personalization = personalization or Personalization()
    now = now or datetime.now().astimezone()
    style_guide = STYLE_INSTRUCTIONS.get(personalization.style, STYLE_INSTRUCTIONS["balanced"])
    user_greeting = ""
    if personalization.name:
        user_greeting = f"The user's name is {personalization.name}. Address them by name occasionally."
    prompt = load_prompt_template(locale).format(
        style_guide=style_guide,
        user_greeting=user_greeting,
        current_date=now.strftime("%A, %B %d, %Y"),
        current_time=now.strftime("%H:%M %Z").strip(),
        task_instructions=TASK_INSTRUCTIONS.get(category, ""),
    )
    return prompt.strip()
