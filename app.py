#!/usr/bin/env python3
from __future__ import annotations

import os, time, asyncio, logging, html, platform
from dataclasses import dataclass
from typing import Optional

import aiohttp
from aiohttp import web
from aiogram import Bot, Dispatcher, F, Router
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode, ChatType
from aiogram.exceptions import TelegramBadRequest
from aiogram.filters import CommandStart, Command, CommandObject
from aiogram.types import (
    Message, CallbackQuery, InlineQuery, InlineKeyboardMarkup, InlineKeyboardButton,
    InlineQueryResultArticle, InlineQueryResultsButton, InputTextMessageContent, FSInputFile, ErrorEvent,
)
from aiogram.utils.keyboard import InlineKeyboardBuilder

from _env import APP_NAME, Settings, load_env_file, read_settings
from _store import ConfigStore, PersistenceError
from _ledger import Ledger, InvalidToken
from _member_cache import MembershipCache
from _access_gate import AccessGate, AccessReason
from _sessions import SessionStore, SessionError, NoPendingUpload, InvalidTransition
from _publish import PublishPipeline, PublishError
from _prompts import PromptStore, PromptKind
from _flow import UploadFlow, Notice, ScheduleInputError
from _scheduler import TIME_HINT
from _admin import AdminConsole, AdminError, Unauthorized
from _healthcheck import LinkChecker

# Optional systemd watchdog
try:
    from sdnotify import SystemdNotifier  # type: ignore
except ImportError:  # pragma: no cover
    SystemdNotifier = None  # type: ignore

# ── Meta / version ──────────────────────────────────────────────────────────────
APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
START_MONO = time.monotonic()

# ── Logging ─────────────────────────────────────────────────────────────────────
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")
log = logging.getLogger(APP_NAME)

# ── Dispatcher/Router ───────────────────────────────────────────────────────────
dp = Dispatcher()
# commands first so they win over the free-text handler
cmd_router = Router(name="commands")
router = Router(name="main")
cmd_router.message.filter(F.chat.type == ChatType.PRIVATE)
router.message.filter(F.chat.type == ChatType.PRIVATE)
dp.include_router(cmd_router)
dp.include_router(router)


# ── App State ───────────────────────────────────────────────────────────────────
@dataclass
class AppState:
    settings: Optional[Settings] = None
    ledger: Optional[Ledger] = None
    gate: Optional[AccessGate] = None
    prompts: Optional[PromptStore] = None
    flow: Optional[UploadFlow] = None
    admin: Optional[AdminConsole] = None
    checker: Optional[LinkChecker] = None
    bot: Optional[Bot] = None
    me_username: Optional[str] = None

state = AppState()

# ── UI helpers ──────────────────────────────────────────────────────────────────
def join_url() -> str:
    return f"https://t.me/{state.ledger.channel}"

def menu_keyboard(is_admin: bool) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="📤 Upload Image", callback_data="UPLOAD")
    kb.button(text="🔍 Healthcheck Link", callback_data="HEALTH")
    kb.button(text="🕓 Schedule Publish", callback_data="SCHEDULE")
    if state.ledger.channel:
        kb.add(InlineKeyboardButton(text="📣 Join Channel", url=join_url()))
    if is_admin:
        kb.button(text="🛠 Admin Panel", callback_data="ADMIN")
    kb.adjust(1)
    return kb.as_markup()

def back_keyboard(target: str = "menu", label: str = "🔙 Back") -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text=label, callback_data=target)
    return kb.as_markup()

def join_keyboard() -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.add(InlineKeyboardButton(text="➡️ Join Channel", url=join_url()))
    kb.button(text="🔄 I Joined", callback_data="CHECK_JOIN")
    kb.adjust(1)
    return kb.as_markup()

def confirm_keyboard() -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="✅ Confirm", callback_data="CONFIRM")
    kb.button(text="❌ Cancel", callback_data="CANCEL")
    kb.adjust(1)
    return kb.as_markup()

def timing_keyboard() -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="🚀 Now", callback_data="DO_NOW")
    kb.button(text="⏰ Later", callback_data="DO_SCHEDULE")
    kb.button(text="❌ Cancel", callback_data="CANCEL")
    kb.adjust(1)
    return kb.as_markup()

def published_keyboard(link: str) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.add(InlineKeyboardButton(text="📋 Copy Link", switch_inline_query_current_chat=link))
    kb.add(InlineKeyboardButton(text="🌐 Open", url=link))
    kb.button(text="🔙 Back", callback_data="menu")
    kb.adjust(1)
    return kb.as_markup()

def admin_keyboard() -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="📊 Stats", callback_data="AD_STATS")
    kb.button(text="🚫 Bans", callback_data="AD_BANS")
    kb.button(text="🎁 Referrals", callback_data="AD_REFS")
    kb.button(text="🔑 Recovery", callback_data="AD_TOKENS")
    kb.button(text="🔙 Back", callback_data="menu")
    kb.adjust(1)
    return kb.as_markup()

def tokens_keyboard() -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="➕ Create", callback_data="AD_NEW")
    kb.button(text="📋 List", callback_data="AD_LIST")
    kb.button(text="🔙", callback_data="ADMIN")
    kb.adjust(1)
    return kb.as_markup()

def referral_link(user_id: int) -> Optional[str]:
    uname = state.me_username or (state.settings.bot_username if state.settings else "")
    if not uname:
        return None
    return f"https://t.me/{uname}?start=ref_{user_id}"

async def _edit_or_send(cb: CallbackQuery, text: str, markup: Optional[InlineKeyboardMarkup] = None) -> None:
    try:
        await cb.message.edit_text(text, reply_markup=markup)
    except TelegramBadRequest as e:
        # photo messages and stale messages cannot be edited into text
        log.debug("edit_text failed uid=%s: %s", cb.from_user.id, e)
        await cb.message.answer(text, reply_markup=markup)

async def _delete_quietly(m: Optional[Message]) -> None:
    if m is None:
        return
    try:
        await m.delete()
    except TelegramBadRequest as e:
        log.debug("delete_message failed mid=%s: %s", getattr(m, "message_id", None), e)

# ── Access gate ─────────────────────────────────────────────────────────────────
async def ensure_access(m: Message, user_id: int) -> bool:
    verdict = await state.gate.check(user_id)
    if verdict.admitted:
        return True
    if verdict.reason is AccessReason.BANNED:
        await m.answer("🚫 You are banned.")
    else:
        if verdict.reason is AccessReason.LOOKUP_FAILED:
            log.warning("ACCESS: membership unknown for uid=%s (check bot rights in @%s)", user_id, state.ledger.channel)
        await m.answer(
            f"🔒 Please <b>join @{html.escape(state.ledger.channel)}</b> to use this bot",
            reply_markup=join_keyboard(),
        )
    return False

# ── Start / menu / user commands ────────────────────────────────────────────────
@cmd_router.message(CommandStart())
async def on_start(message: Message, command: CommandObject):
    uid = message.from_user.id
    try:
        state.ledger.record_start(uid, command.args)
    except PersistenceError:
        log.error("START: could not persist start uid=%s", uid)
    name = html.escape(message.from_user.first_name or "there")
    text = f"👋 Hi {name}\nUse /menu to begin. Enjoy free access!"
    ref = referral_link(uid)
    if ref:
        text += f"\n\n🎁 Invite friends: {html.escape(ref)}"
    await message.answer(text, disable_web_page_preview=True)

@cmd_router.message(Command("menu"))
async def on_menu(message: Message):
    await message.answer("🔹 Main Menu 🔹", reply_markup=menu_keyboard(state.gate.is_admin(message.from_user.id)))

@cmd_router.message(Command("redeem"))
async def on_redeem(message: Message, command: CommandObject):
    token = (command.args or "").strip()
    if not token:
        await message.answer("Usage: /redeem TOKEN"); return
    try:
        r = state.ledger.redeem_token(token, message.from_user.id)
    except InvalidToken:
        await message.answer("❌ Invalid token."); return
    except PersistenceError:
        await message.answer("⚠️ Could not save the redemption, please try again later."); return
    state.gate.forget(message.from_user.id)
    await message.answer(f"✅ Redeemed {r.days} days for user {r.user_id}")

@cmd_router.message(Command("history"))
async def on_history(message: Message):
    links = state.ledger.history(message.from_user.id)
    if not links:
        await message.answer("No uploads yet.", reply_markup=back_keyboard()); return
    body = "\n".join(html.escape(l) for l in reversed(links))
    await message.answer(f"🗂 Your uploads:\n{body}", disable_web_page_preview=True)

# ── Admin commands ──────────────────────────────────────────────────────────────
async def _admin_reply(m: Message, fn) -> None:
    try:
        text = fn()
    except Unauthorized:
        await m.answer("⛔ Admins only."); return
    except AdminError as e:
        await m.answer(f"❌ {e}"); return
    except PersistenceError:
        await m.answer("⚠️ Storage error: the change was NOT saved."); return
    await m.answer(text)

@cmd_router.message(Command("stats"))
async def cmd_stats(m: Message):
    await _admin_reply(m, lambda: state.admin.stats_text(m.from_user.id))

@cmd_router.message(Command("ban"))
async def cmd_ban(m: Message, command: CommandObject):
    await _admin_reply(m, lambda: f"🚫 Banned {state.admin.ban(m.from_user.id, command.args)}")

@cmd_router.message(Command("unban"))
async def cmd_unban(m: Message, command: CommandObject):
    await _admin_reply(m, lambda: f"✅ Unbanned {state.admin.unban(m.from_user.id, command.args)}")

@cmd_router.message(Command("setchannel"))
async def cmd_setchannel(m: Message, command: CommandObject):
    await _admin_reply(m, lambda: f"📣 Required channel is now @{html.escape(state.admin.set_channel(m.from_user.id, command.args))}")

@cmd_router.message(Command("resetstats"))
async def cmd_resetstats(m: Message):
    def _do():
        state.admin.reset_stats(m.from_user.id)
        return "📊 Stats reset."
    await _admin_reply(m, _do)

@cmd_router.message(Command("health"))
async def cmd_health(m: Message):
    if not state.gate.is_admin(m.from_user.id):
        log.info("CMD /health ignored: uid=%s is not admin", m.from_user.id); return
    import aiogram
    uptime = int(time.monotonic() - START_MONO)
    await m.answer(
        "ok\n"
        f"- app: {APP_NAME} {APP_VERSION}\n"
        f"- aiogram: {aiogram.__version__}\n"
        f"- python: {platform.python_version()}\n"
        f"- uptime: {uptime // 3600:02d}:{uptime % 3600 // 60:02d}:{uptime % 60:02d}\n"
        f"- sessions: {len(state.flow.sessions)}\n"
        f"- scheduled: {state.flow.scheduler.pending_count()}\n"
        f"- cached members: {len(state.gate.cache)}"
    )

# ── Menu callbacks ──────────────────────────────────────────────────────────────
@router.callback_query(F.data == "menu")
async def cb_menu(cb: CallbackQuery):
    await cb.answer()
    await _edit_or_send(cb, "🔹 Main Menu 🔹", menu_keyboard(state.gate.is_admin(cb.from_user.id)))

@router.callback_query(F.data == "CHECK_JOIN")
async def cb_check_join(cb: CallbackQuery):
    verdict = await state.gate.check(cb.from_user.id)
    if verdict.admitted:
        await cb.answer()
        await cb.message.answer("✅ You’re now a member! Use /menu")
    elif verdict.reason is AccessReason.BANNED:
        await cb.answer("🚫 You are banned.", show_alert=True)
    else:
        await cb.answer(f"Still not subscribed to @{state.ledger.channel}", show_alert=True)

@router.callback_query(F.data == "HEALTH")
async def cb_health(cb: CallbackQuery):
    await cb.answer()
    await _edit_or_send(
        cb,
        f"🔍 Send me any <code>{html.escape(state.checker.prefix)}...</code> link to check.",
        back_keyboard(),
    )

@router.callback_query(F.data == "SCHEDULE")
async def cb_schedule(cb: CallbackQuery):
    await cb.answer()
    times = state.flow.scheduler.list(cb.from_user.id)
    jobs = "\n".join(t.strftime("%Y-%m-%d %H:%M UTC") for t in times) or "None"
    kb = InlineKeyboardBuilder()
    kb.button(text="📤 New Upload", callback_data="UPLOAD")
    kb.button(text="🔙 Back", callback_data="menu")
    kb.adjust(1)
    await _edit_or_send(cb, f"🕓 Your Schedules:\n{jobs}", kb.as_markup())

@router.callback_query(F.data == "UPLOAD")
async def cb_upload(cb: CallbackQuery):
    await cb.answer()
    await _edit_or_send(cb, "📤 Send an image to convert:", back_keyboard())

# ── Image flow ──────────────────────────────────────────────────────────────────
image_filter = F.photo | (F.document & F.document.mime_type.startswith("image/"))

@router.message(image_filter)
async def on_image(message: Message):
    uid = message.from_user.id
    if not await ensure_access(message, uid):
        return
    is_photo = bool(message.photo)
    file_id = message.photo[-1].file_id if is_photo else message.document.file_id
    session = await state.flow.begin(uid, file_id, caption=message.caption)

    preview = None
    if session.artifact_path:
        try:
            preview = await message.answer_photo(FSInputFile(session.artifact_path), reply_markup=confirm_keyboard())
        except (TelegramBadRequest, OSError) as e:
            # artifact already released by a newer upload, or rejected by Telegram
            log.debug("preview from artifact failed uid=%s: %s", uid, e)
    if preview is None:
        if is_photo:
            preview = await message.answer_photo(file_id, reply_markup=confirm_keyboard())
        else:
            preview = await message.answer_document(file_id, reply_markup=confirm_keyboard())
    session.preview_message_id = preview.message_id

async def _session_warning(target: Message, e: SessionError) -> None:
    if isinstance(e, NoPendingUpload):
        await target.answer("⚠️ No pending image.", reply_markup=back_keyboard())
    elif isinstance(e, InvalidTransition):
        await target.answer("⚠️ That step is not available for your current upload.", reply_markup=back_keyboard())
    else:
        await target.answer("⚠️ Your upload changed meanwhile. Please start again.", reply_markup=back_keyboard())

@router.callback_query(F.data == "CANCEL")
async def cb_cancel(cb: CallbackQuery):
    await cb.answer()
    try:
        state.flow.cancel(cb.from_user.id)
    except SessionError as e:
        await _session_warning(cb.message, e); return
    await _delete_quietly(cb.message)
    await cb.message.answer("❌ Upload canceled.", reply_markup=back_keyboard())

@router.callback_query(F.data == "CONFIRM")
async def cb_confirm(cb: CallbackQuery):
    await cb.answer()
    if not await ensure_access(cb.message, cb.from_user.id):
        return
    try:
        state.flow.confirm(cb.from_user.id)
    except SessionError as e:
        await _session_warning(cb.message, e); return
    await _delete_quietly(cb.message)
    await cb.message.answer("✅ Confirmed! Publish now or schedule?", reply_markup=timing_keyboard())

@router.callback_query(F.data == "DO_NOW")
async def cb_do_now(cb: CallbackQuery):
    uid = cb.from_user.id
    if not await ensure_access(cb.message, uid):
        await cb.answer(); return
    await cb.answer("Publishing…")
    try:
        link = await state.flow.publish_now(uid)
    except SessionError as e:
        await _session_warning(cb.message, e); return
    except PublishError as e:
        log.info("DO_NOW: uid=%s failed at %s", uid, e.stage)
        await cb.message.answer("❌ Upload failed. Please try again.", reply_markup=back_keyboard()); return
    except Exception:
        log.exception("DO_NOW: uid=%s publish crashed", uid)
        await cb.message.answer("❌ Upload failed. Please try again.", reply_markup=back_keyboard()); return
    await cb.message.answer(
        f"✅ Published: {html.escape(link.url)}" + ("" if link.recorded else UNRECORDED_NOTE),
        reply_markup=published_keyboard(link.url),
        disable_web_page_preview=True,
    )

@router.callback_query(F.data == "DO_SCHEDULE")
async def cb_do_schedule(cb: CallbackQuery):
    await cb.answer()
    if not await ensure_access(cb.message, cb.from_user.id):
        return
    try:
        state.flow.request_schedule(cb.from_user.id)
    except SessionError as e:
        await _session_warning(cb.message, e); return
    await cb.message.answer(
        f"📅 Send date/time as <code>{TIME_HINT}</code> ({html.escape(state.flow.tz)}):",
        reply_markup=back_keyboard("CANCEL", "❌ Cancel"),
    )

# ── Admin panel callbacks ───────────────────────────────────────────────────────
async def _admin_cb(cb: CallbackQuery, fn, markup: Optional[InlineKeyboardMarkup] = None) -> None:
    try:
        text = fn()
    except Unauthorized:
        await cb.answer("Nope", show_alert=True); return
    await cb.answer()
    await cb.message.answer(text, reply_markup=markup or back_keyboard("ADMIN", "🔙"))

@router.callback_query(F.data == "ADMIN")
async def cb_admin(cb: CallbackQuery):
    if not state.gate.is_admin(cb.from_user.id):
        await cb.answer("Nope", show_alert=True); return
    await cb.answer()
    await _edit_or_send(cb, "🛠 Admin Panel", admin_keyboard())

@router.callback_query(F.data == "AD_STATS")
async def cb_ad_stats(cb: CallbackQuery):
    await _admin_cb(cb, lambda: state.admin.stats_text(cb.from_user.id))

@router.callback_query(F.data == "AD_BANS")
async def cb_ad_bans(cb: CallbackQuery):
    await _admin_cb(cb, lambda: state.admin.bans_text(cb.from_user.id))

@router.callback_query(F.data == "AD_REFS")
async def cb_ad_refs(cb: CallbackQuery):
    await _admin_cb(cb, lambda: state.admin.referrals_text(cb.from_user.id))

@router.callback_query(F.data == "AD_TOKENS")
async def cb_ad_tokens(cb: CallbackQuery):
    def _view():
        state.admin.require_admin(cb.from_user.id)
        return "🔑 Tokens"
    await _admin_cb(cb, _view, tokens_keyboard())

@router.callback_query(F.data == "AD_LIST")
async def cb_ad_list(cb: CallbackQuery):
    await _admin_cb(cb, lambda: state.admin.tokens_text(cb.from_user.id))

@router.callback_query(F.data == "AD_NEW")
async def cb_ad_new(cb: CallbackQuery):
    def _prompt():
        state.admin.begin_create_token(cb.from_user.id)
        return "Reply <code>userId days</code> to create token:"
    await _admin_cb(cb, _prompt)

# ── Free text: pending prompt, else link healthcheck ────────────────────────────
async def _answer_schedule_time(message: Message, uid: int, text: str) -> None:
    try:
        job = state.flow.submit_schedule_time(uid, text)
    except ScheduleInputError as e:
        if e.retry:
            await message.answer(f"❌ Bad format or time in the past ({html.escape(str(e))}).\n"
                                 f"Send <code>{TIME_HINT}</code> once more:")
        else:
            await message.answer("❌ Bad format again. Upload canceled, use /menu to start over.",
                                 reply_markup=back_keyboard())
        return
    except SessionError as e:
        await _session_warning(message, e); return
    await message.answer(
        f"⏰ Scheduled at {job.fires_at.strftime('%Y-%m-%d %H:%M UTC')}",
        reply_markup=back_keyboard(),
    )

async def _answer_token_args(message: Message, uid: int, text: str) -> None:
    try:
        token, target, days = state.admin.create_token_from_text(uid, text)
    except Unauthorized:
        state.prompts.clear(uid)
        await message.answer("⛔ Admins only."); return
    except AdminError as e:
        again = state.prompts.pending(uid) is PromptKind.ADMIN_NEW_TOKEN
        await message.answer(f"❌ {e}" + ("" if again else "\nToken creation canceled.")); return
    except PersistenceError:
        state.prompts.clear(uid)
        await message.answer("⚠️ Storage error: the token was NOT saved."); return
    await message.answer(f"Token: <code>{html.escape(token)}</code> for {target} ({days}d)")

@router.message(F.text & ~F.text.startswith("/"))
async def on_text(message: Message):
    uid = message.from_user.id
    text = (message.text or "").strip()
    pending = state.prompts.pending(uid)
    if pending is PromptKind.SCHEDULE_TIME:
        await _answer_schedule_time(message, uid, text); return
    if pending is PromptKind.ADMIN_NEW_TOKEN:
        await _answer_token_args(message, uid, text); return
    if state.checker.looks_like_hosted_link(text):
        ok = await state.checker.check(text)
        kb = InlineKeyboardBuilder()
        kb.add(InlineKeyboardButton(text="🌐 Open" if ok else "🔗 Retry", url=text))
        await message.answer(
            f"{'🟢 OK' if ok else '🔴 Broken'}: {html.escape(text)}",
            reply_markup=kb.as_markup(),
            disable_web_page_preview=True,
        )

# ── Inline mode link healthcheck ────────────────────────────────────────────────
@router.inline_query()
async def on_inline(q: InlineQuery):
    text = (q.query or "").strip()
    if not state.checker.looks_like_hosted_link(text):
        await q.answer([], cache_time=5, button=InlineQueryResultsButton(text="Use /menu", start_parameter="start"))
        return
    ok = await state.checker.check(text)
    kb = InlineKeyboardBuilder()
    kb.add(InlineKeyboardButton(text="🌐 Open" if ok else "🔗 Retry", url=text))
    result = InlineQueryResultArticle(
        id="hc" if ok else "hc2",
        title="🟢 OK" if ok else "🔴 Broken",
        description="Link is valid" if ok else "Link seems broken",
        input_message_content=InputTextMessageContent(message_text=f"{'✔️' if ok else '❌'} {text}"),
        thumbnail_url=text,
        reply_markup=kb.as_markup(),
    )
    await q.answer([result], cache_time=5, is_personal=True)

# ── Errors ──────────────────────────────────────────────────────────────────────
@dp.error()
async def on_error(event: ErrorEvent):
    log.error("Unhandled error in update %s: %r",
              getattr(event.update, "update_id", None), event.exception, exc_info=event.exception)
    return True

# ── Scheduled job / expiry notifications ────────────────────────────────────────
UNRECORDED_NOTE = "\n⚠️ The link works, but it was not counted in your history or the stats."

async def notify_user(notice: Notice) -> None:
    if notice.kind == "published":
        await state.bot.send_message(
            notice.user_id,
            f"✅ Scheduled publish done: {html.escape(notice.link)}" + ("" if notice.recorded else UNRECORDED_NOTE),
            reply_markup=published_keyboard(notice.link),
            disable_web_page_preview=True,
        )
    elif notice.kind == "publish_failed":
        await state.bot.send_message(notice.user_id, "❌ Scheduled upload failed. Please upload the image again.")
    elif notice.kind == "expired":
        await state.bot.send_message(notice.user_id, "⌛ Your pending upload expired. Send the image again to retry.")

async def expirer_loop(interval: int):
    await asyncio.sleep(5)
    log.info("Expirer loop started: interval=%ss ttl=%ss", interval, state.flow.session_ttl)
    while True:
        try:
            await state.flow.expire_stale()
        except Exception:
            log.exception("expire_stale() crashed")
        await asyncio.sleep(interval)

# ── Optional systemd watchdog heartbeat ────────────────────────────────────────
def watchdog_status() -> str:
    return (f"STATUS={APP_NAME} {APP_VERSION}: sessions={len(state.flow.sessions)} "
            f"scheduled={state.flow.scheduler.pending_count()}")

async def watchdog_task():
    if SystemdNotifier is None:
        return
    try:
        n = SystemdNotifier()
        n.notify("READY=1")
        wd_usec = os.getenv("WATCHDOG_USEC")
        if not wd_usec:
            return
        interval = max(1.0, int(wd_usec) / 1_000_000 / 2.0)  # half of watchdog
        log.info("%s: systemd watchdog every %.1fs", APP_NAME, interval)
        while True:
            n.notify("WATCHDOG=1")
            n.notify(watchdog_status())
            await asyncio.sleep(interval)
    except Exception as e:
        log.debug("Watchdog task stopped: %s", e)

# ── Liveness endpoint ───────────────────────────────────────────────────────────
async def _liveness(request: web.Request) -> web.Response:
    return web.Response(text="ok")

async def start_liveness_server(port: int) -> Optional[web.AppRunner]:
    if not port:
        return None
    app = web.Application()
    app.router.add_get("/health", _liveness)
    app.router.add_get("/", _liveness)
    runner = web.AppRunner(app)
    await runner.setup()
    await web.TCPSite(runner, "0.0.0.0", port).start()
    log.info("Liveness endpoint listening on :%s", port)
    return runner

# ── Entry point ─────────────────────────────────────────────────────────────────
def build_state(settings: Settings, bot: Bot, http: aiohttp.ClientSession) -> AppState:
    store = ConfigStore(settings.sqlite_path, channel=settings.channel)
    store.load()
    ledger = Ledger(store)

    async def lookup(channel: str, user_id: int):
        return await bot.get_chat_member(f"@{channel}", user_id)

    async def resolve_file(file_id: str) -> str:
        f = await bot.get_file(file_id)
        return f.file_path

    gate = AccessGate(
        ledger,
        MembershipCache(settings.member_cache_ttl, settings.member_cache_max),
        lookup,
        admin_ids=settings.admin_ids,
        free_mode=settings.free_mode,
    )
    pipeline = PublishPipeline(
        http, ledger, settings.bot_token, resolve_file,
        origin=settings.hosting_origin,
        fetch_timeout=settings.fetch_timeout,
        upload_timeout=settings.upload_timeout,
        max_dimension=settings.image_max_dim,
        transform=settings.image_transform,
        work_dir=settings.work_dir,
    )
    prompts = PromptStore()
    flow = UploadFlow(
        SessionStore(), pipeline, prompts, notify_user,
        tz=settings.schedule_tz,
        session_ttl=settings.session_ttl,
        preview=settings.image_transform,
    )
    return AppState(
        settings=settings,
        ledger=ledger,
        gate=gate,
        prompts=prompts,
        flow=flow,
        admin=AdminConsole(ledger, gate, prompts),
        checker=LinkChecker(http, settings.hosting_origin, timeout=settings.fetch_timeout),
        bot=bot,
    )

async def main(settings: Settings):
    global state
    bot = Bot(token=settings.bot_token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
    http = aiohttp.ClientSession()
    state = build_state(settings, bot, http)

    me = await bot.get_me()
    state.me_username = me.username or settings.bot_username
    log.info("Bot username: @%s (channel=@%s free_mode=%s admins=%s)",
             me.username, state.ledger.channel, settings.free_mode, sorted(settings.admin_ids))
    if not settings.admin_ids:
        log.warning("ADMIN_IDS is empty: admin panel disabled")

    runner = await start_liveness_server(settings.port)
    background = [
        asyncio.create_task(expirer_loop(settings.expire_sweep_interval)),
        asyncio.create_task(watchdog_task()),
    ]
    try:
        await dp.start_polling(bot, allowed_updates=dp.resolve_used_update_types())
    finally:
        for t in background:
            t.cancel()
        state.flow.scheduler.shutdown()
        try:
            state.ledger.store.flush()
        except PersistenceError:
            log.exception("Final config flush failed")
        if runner is not None:
            await runner.cleanup()
        await http.close()
        await bot.session.close()

if __name__ == "__main__":
    load_env_file()
    _settings = read_settings()
    try:
        asyncio.run(main(_settings))
    except (KeyboardInterrupt, SystemExit):
        pass
