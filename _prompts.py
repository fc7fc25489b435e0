from __future__ import annotations
import enum
from dataclasses import dataclass
from typing import Dict, Optional


class PromptKind(str, enum.Enum):
    SCHEDULE_TIME = "schedule_time"
    ADMIN_NEW_TOKEN = "admin_new_token"


@dataclass
class Prompt:
    kind: PromptKind
    failures: int = 0


class PromptStore:
    """Which reply, if any, each user's next text message answers."""

    def __init__(self, max_failures: int = 1):
        self.max_failures = max_failures
        self._prompts: Dict[int, Prompt] = {}

    def await_input(self, user_id: int, kind: PromptKind) -> None:
        self._prompts[user_id] = Prompt(kind)

    def pending(self, user_id: int) -> Optional[PromptKind]:
        p = self._prompts.get(user_id)
        return p.kind if p else None

    def clear(self, user_id: int) -> None:
        self._prompts.pop(user_id, None)

    def record_failure(self, user_id: int) -> bool:
        """True: ask again. False: give up, the prompt is cleared."""
        p = self._prompts.get(user_id)
        if p is None:
            return False
        p.failures += 1
        if p.failures > self.max_failures:
            self.clear(user_id)
            return False
        return True
