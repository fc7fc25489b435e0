from __future__ import annotations
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple


class MembershipCache:
    """
    Short-lived memo of "user passed the channel check".

    Entries expire ttl seconds after they are written; when max_size is reached
    the least recently used entry is evicted. Absence means "unknown, check again".
    """

    def __init__(self, ttl_seconds: float = 300, max_size: int = 500,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = float(ttl_seconds)
        self.max_size = int(max_size)
        self._clock = clock
        self._entries: "OrderedDict[int, Tuple[bool, float]]" = OrderedDict()

    def get(self, user_id: int) -> Optional[bool]:
        item = self._entries.get(user_id)
        if item is None:
            return None
        admitted, expires_at = item
        if self._clock() >= expires_at:
            del self._entries[user_id]
            return None
        self._entries.move_to_end(user_id)
        return admitted

    def put(self, user_id: int, admitted: bool = True) -> None:
        if user_id in self._entries:
            self._entries.move_to_end(user_id)
        elif len(self._entries) >= self.max_size:
            self._entries.popitem(last=False)
        self._entries[user_id] = (bool(admitted), self._clock() + self.ttl)

    def expires_at(self, user_id: int) -> Optional[float]:
        item = self._entries.get(user_id)
        return item[1] if item else None

    def invalidate(self, user_id: int) -> None:
        self._entries.pop(user_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, user_id: int) -> bool:
        return self.get(user_id) is not None

    def __len__(self) -> int:
        return len(self._entries)
