from __future__ import annotations
import logging, secrets, time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from _store import ConfigStore, user_key

log = logging.getLogger("telegraph-publisher")

HISTORY_LIMIT = 20
REFERRAL_PREFIX = "ref_"


class InvalidToken(Exception):
    """Recovery token unknown, already used, or bound to another user."""


@dataclass(frozen=True)
class Stats:
    requests: int
    unique_users: int
    per_user: Dict[str, int]


@dataclass(frozen=True)
class Redemption:
    token: str
    user_id: int
    days: int
    expires_at: int


def parse_referral(payload: Optional[str]) -> Optional[int]:
    """Referral code carried by /start: the inviter's user id, optionally prefixed with ref_."""
    if not payload:
        return None
    code = payload.strip()
    if code.startswith(REFERRAL_PREFIX):
        code = code[len(REFERRAL_PREFIX):]
    if not code.isdigit():
        return None
    return int(code)


class Ledger:
    def __init__(self, store: ConfigStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    # ── analytics ──────────────────────────────────────────────────────────────
    def record_publish(self, owner_id: int, link: str) -> int:
        def _apply(doc) -> int:
            stats = doc["stats"]
            stats["requests"] = int(stats.get("requests", 0)) + 1
            key = user_key(owner_id)
            stats["users"][key] = int(stats["users"].get(key, 0)) + 1
            hist = doc["history"].setdefault(key, [])
            hist.append(link)
            del hist[:-HISTORY_LIMIT]
            return stats["requests"]
        total = self.store.mutate(_apply)
        log.info("LEDGER: publish recorded uid=%s total=%s", owner_id, total)
        return total

    def stats(self) -> Stats:
        def _read(doc) -> Stats:
            users = dict(doc["stats"].get("users", {}))
            return Stats(int(doc["stats"].get("requests", 0)), len(users), users)
        return self.store.read(_read)

    def reset_stats(self) -> None:
        def _apply(doc) -> None:
            doc["stats"] = {"requests": 0, "users": {}}
        self.store.mutate(_apply)
        log.info("LEDGER: stats reset")

    def history(self, user_id: int) -> List[str]:
        return self.store.read(lambda doc: list(doc["history"].get(user_key(user_id), [])))

    # ── referrals ──────────────────────────────────────────────────────────────
    def record_start(self, user_id: int, payload: Optional[str] = None) -> Optional[int]:
        """
        Register a /start. Returns the credited referrer id, or None.

        Only a user's first /start can credit a referrer, and never themselves.
        """
        referrer = parse_referral(payload)
        uid = int(user_id)

        def _apply(doc) -> Optional[int]:
            started = doc["started"]
            first = uid not in started
            if first:
                started.append(uid)
            if referrer is None or referrer == uid or not first:
                return None
            key = user_key(referrer)
            doc["referrals"][key] = int(doc["referrals"].get(key, 0)) + 1
            return referrer

        already = self.store.read(lambda doc: uid in doc["started"])
        if already:
            return None
        credited = self.store.mutate(_apply)
        if credited is not None:
            log.info("LEDGER: referral credited referrer=%s new_user=%s", credited, uid)
        elif referrer is not None and referrer == uid:
            log.info("LEDGER: self-referral ignored uid=%s", uid)
        return credited

    def referrals(self) -> Dict[str, int]:
        return self.store.read(lambda doc: dict(doc["referrals"]))

    # ── access policy ──────────────────────────────────────────────────────────
    @property
    def channel(self) -> str:
        return self.store.read(lambda doc: doc.get("channel") or "")

    def set_channel(self, channel: str) -> str:
        name = channel.strip().lstrip("@")

        def _apply(doc) -> None:
            doc["channel"] = name
        self.store.mutate(_apply)
        log.info("LEDGER: required channel set to @%s", name)
        return name

    def is_banned(self, user_id: int) -> bool:
        return self.store.read(lambda doc: int(user_id) in doc["banned"])

    def banned(self) -> List[int]:
        return self.store.read(lambda doc: sorted(doc["banned"]))

    def ban(self, user_id: int) -> bool:
        uid = int(user_id)

        def _apply(doc) -> bool:
            if uid in doc["banned"]:
                return False
            doc["banned"].append(uid)
            return True
        changed = self.store.mutate(_apply)
        log.info("LEDGER: ban uid=%s changed=%s", uid, changed)
        return changed

    def unban(self, user_id: int) -> bool:
        uid = int(user_id)

        def _apply(doc) -> bool:
            if uid not in doc["banned"]:
                return False
            doc["banned"].remove(uid)
            return True
        changed = self.store.mutate(_apply)
        log.info("LEDGER: unban uid=%s changed=%s", uid, changed)
        return changed

    # ── recovery tokens ────────────────────────────────────────────────────────
    def create_token(self, user_id: int, days: int) -> str:
        if int(user_id) <= 0 or int(days) <= 0:
            raise ValueError("user id and days must be positive")

        def _apply(doc) -> str:
            token = secrets.token_hex(3).upper()
            while token in doc["recovery_tokens"]:
                token = secrets.token_hex(3).upper()
            doc["recovery_tokens"][token] = {"user_id": int(user_id), "days": int(days)}
            return token
        token = self.store.mutate(_apply)
        log.info("LEDGER: recovery token created for uid=%s days=%s", user_id, days)
        return token

    def tokens(self) -> List[Tuple[str, int, int]]:
        def _read(doc):
            return sorted(
                (t, int(v["user_id"]), int(v["days"]))
                for t, v in doc["recovery_tokens"].items()
            )
        return self.store.read(_read)

    def redeem_token(self, token: str, user_id: int) -> Redemption:
        token = (token or "").strip().upper()
        uid = int(user_id)
        now = int(self._clock())

        def _apply(doc) -> Redemption:
            info = doc["recovery_tokens"].get(token)
            if not info or int(info["user_id"]) != uid:
                raise InvalidToken(token)
            del doc["recovery_tokens"][token]
            days = int(info["days"])
            key = user_key(uid)
            start = max(now, int(doc["grants"].get(key, 0)))
            expires = start + days * 24 * 60 * 60
            doc["grants"][key] = expires
            return Redemption(token, uid, days, expires)
        redemption = self.store.mutate(_apply)
        log.info("LEDGER: token redeemed uid=%s days=%s", uid, redemption.days)
        return redemption

    def has_grant(self, user_id: int) -> bool:
        until = self.store.read(lambda doc: int(doc["grants"].get(user_key(user_id), 0)))
        return until > self._clock()
