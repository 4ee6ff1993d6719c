"""State definition for the request planning graph."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Tuple, TypedDict

from assistant_core.domain.models import TaskCategory, Turn
from assistant_core.prompts import Personalization
from assistant_core.providers.registry import ProviderDescriptor


class PlanState(TypedDict, total=False):
    """State shared across planning nodes."""

    turns: List[Turn]
    has_attachments: bool
    personalization: Optional[Personalization]
    now: Optional[datetime]
    category: Optional[TaskCategory]
    system_prompt: Optional[str]
    candidates: List[Tuple[ProviderDescriptor, str]]
