from __future__ import annotations
import enum, logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional, Set

from _ledger import Ledger
from _member_cache import MembershipCache

log = logging.getLogger("telegraph-publisher")

ADMITTED_STATUSES = {"creator", "administrator", "member"}

MembershipLookup = Callable[[str, int], Awaitable[object]]


class AccessReason(str, enum.Enum):
    ADMIN = "admin"
    FREE_MODE = "free_mode"
    GRANT = "grant"
    CACHED = "cached"
    MEMBER = "member"
    BANNED = "banned"
    NOT_SUBSCRIBED = "not_subscribed"
    LOOKUP_FAILED = "lookup_failed"


@dataclass(frozen=True)
class Verdict:
    admitted: bool
    reason: AccessReason

    @property
    def banned(self) -> bool:
        return self.reason is AccessReason.BANNED


def normalize_status(status_obj) -> str:
    if status_obj is None:
        return "unknown"
    val = getattr(status_obj, "value", None)
    if isinstance(val, str):
        return val.lower()
    if isinstance(status_obj, str):
        return status_obj.lower()
    return str(status_obj).lower()


class AccessGate:
    def __init__(self, ledger: Ledger, cache: MembershipCache, lookup: MembershipLookup,
                 admin_ids: Iterable[int] = (), free_mode: bool = False):
        self.ledger = ledger
        self.cache = cache
        self._lookup = lookup
        self.admin_ids: Set[int] = frozenset(int(a) for a in admin_ids)
        self.free_mode = bool(free_mode)

    def is_admin(self, user_id: Optional[int]) -> bool:
        return user_id is not None and int(user_id) in self.admin_ids

    async def check(self, user_id: int) -> Verdict:
        if self.is_admin(user_id):
            log.debug("GATE: admin bypass uid=%s", user_id)
            return Verdict(True, AccessReason.ADMIN)
        # ban is checked before free mode: a banned user is never admitted
        if self.ledger.is_banned(user_id):
            log.info("GATE: banned uid=%s", user_id)
            return Verdict(False, AccessReason.BANNED)
        if self.free_mode:
            return Verdict(True, AccessReason.FREE_MODE)
        if self.ledger.has_grant(user_id):
            return Verdict(True, AccessReason.GRANT)
        if self.cache.get(user_id):
            return Verdict(True, AccessReason.CACHED)

        channel = self.ledger.channel
        if not channel:
            log.warning("GATE: no required channel configured, denying uid=%s", user_id)
            return Verdict(False, AccessReason.LOOKUP_FAILED)
        try:
            member = await self._lookup(channel, user_id)
        except Exception as e:
            # bot not admin in the channel, channel renamed, network down
            log.warning("GATE: membership lookup failed channel=@%s uid=%s err=%r", channel, user_id, e)
            return Verdict(False, AccessReason.LOOKUP_FAILED)

        status = normalize_status(getattr(member, "status", member))
        if status in ADMITTED_STATUSES:
            self.cache.put(user_id, True)
            log.debug("GATE: member uid=%s status=%s", user_id, status)
            return Verdict(True, AccessReason.MEMBER)
        log.info("GATE: not subscribed uid=%s status=%s", user_id, status)
        return Verdict(False, AccessReason.NOT_SUBSCRIBED)

    def forget(self, user_id: int) -> None:
        self.cache.invalidate(user_id)

    def channel_changed(self) -> None:
        self.cache.clear()
