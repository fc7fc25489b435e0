from __future__ import annotations
import html, logging
from typing import Optional

from _access_gate import AccessGate
from _ledger import Ledger
from _prompts import PromptKind, PromptStore

log = logging.getLogger("telegraph-publisher")


class Unauthorized(Exception):
    pass


class AdminError(ValueError):
    """Admin input rejected; the message is shown to the admin."""


def parse_user_id(raw: Optional[str]) -> int:
    try:
        uid = int((raw or "").strip())
    except ValueError:
        raise AdminError("User id must be a number.")
    if uid <= 0:
        raise AdminError("User id must be positive.")
    return uid


class AdminConsole:
    def __init__(self, ledger: Ledger, gate: AccessGate, prompts: PromptStore):
        self.ledger = ledger
        self.gate = gate
        self.prompts = prompts

    def require_admin(self, caller_id: Optional[int]) -> None:
        if not self.gate.is_admin(caller_id):
            log.info("ADMIN: denied caller=%s", caller_id)
            raise Unauthorized(caller_id)

    def audit(self, caller_id: int, action: str) -> None:
        log.info("ADMIN: %s by uid=%s", action, caller_id)

    # ── views ──────────────────────────────────────────────────────────────────
    def stats_text(self, caller_id: int) -> str:
        self.require_admin(caller_id)
        s = self.ledger.stats()
        return f"📊 Stats\n• Uploads: {s.requests}\n• Unique Users: {s.unique_users}"

    def bans_text(self, caller_id: int) -> str:
        self.require_admin(caller_id)
        banned = self.ledger.banned()
        return "🚫 Banned: " + (", ".join(str(b) for b in banned) or "None")

    def referrals_text(self, caller_id: int) -> str:
        self.require_admin(caller_id)
        refs = sorted(self.ledger.referrals().items(), key=lambda kv: (-kv[1], kv[0]))
        lines = [f"{uid}: {count}" for uid, count in refs]
        return "🎁 Referrals\n" + ("\n".join(lines) or "None")

    def tokens_text(self, caller_id: int) -> str:
        self.require_admin(caller_id)
        lines = [f"<code>{html.escape(t)}</code>: {uid} ({days}d)" for t, uid, days in self.ledger.tokens()]
        return "🗒 Tokens\n" + ("\n".join(lines) or "No tokens")

    # ── mutations ──────────────────────────────────────────────────────────────
    def ban(self, caller_id: int, raw_target: Optional[str]) -> int:
        self.require_admin(caller_id)
        target = parse_user_id(raw_target)
        if self.gate.is_admin(target):
            raise AdminError("Admins cannot be banned.")
        self.ledger.ban(target)
        self.gate.forget(target)
        self.audit(caller_id, f"ban {target}")
        return target

    def unban(self, caller_id: int, raw_target: Optional[str]) -> int:
        self.require_admin(caller_id)
        target = parse_user_id(raw_target)
        self.ledger.unban(target)
        self.audit(caller_id, f"unban {target}")
        return target

    def set_channel(self, caller_id: int, raw_channel: Optional[str]) -> str:
        self.require_admin(caller_id)
        name = (raw_channel or "").strip().lstrip("@")
        if not name or any(c.isspace() for c in name):
            raise AdminError("Usage: /setchannel @channel")
        name = self.ledger.set_channel(name)
        self.gate.channel_changed()
        self.audit(caller_id, f"setchannel @{name}")
        return name

    def reset_stats(self, caller_id: int) -> None:
        self.require_admin(caller_id)
        self.ledger.reset_stats()
        self.audit(caller_id, "resetstats")

    def begin_create_token(self, caller_id: int) -> None:
        self.require_admin(caller_id)
        self.prompts.await_input(caller_id, PromptKind.ADMIN_NEW_TOKEN)

    def create_token_from_text(self, caller_id: int, text: str) -> tuple:
        """Answer to the "<user_id> <days>" prompt. Returns (token, user_id, days)."""
        self.require_admin(caller_id)
        parts = (text or "").split()
        try:
            if len(parts) != 2:
                raise AdminError("Bad format. Reply: <code>userId days</code>")
            uid = parse_user_id(parts[0])
            try:
                days = int(parts[1])
            except ValueError:
                raise AdminError("Days must be a number.")
            if days <= 0:
                raise AdminError("Days must be positive.")
        except AdminError:
            # second bad reply drops the prompt
            self.prompts.record_failure(caller_id)
            raise
        token = self.ledger.create_token(uid, days)
        self.prompts.clear(caller_id)
        self.audit(caller_id, f"token for {uid} ({days}d)")
        return token, uid, days
