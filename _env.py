from __future__ import annotations
import os, sys, logging
from dataclasses import dataclass, field
from typing import Optional, Set

APP_NAME = "telegraph-publisher"
log = logging.getLogger(APP_NAME)

_TRUE = {"1", "true", "yes", "on"}


def flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE


def get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return int(default)
    try:
        return int(raw.strip())
    except ValueError:
        raise SystemExit(f"ENV {key} must be integer, got: {raw!r}")


def parse_id_list(raw: str) -> Set[int]:
    ids: Set[int] = set()
    if not raw or not raw.strip():
        return ids
    for token in raw.replace(",", " ").split():
        try:
            ids.add(int(token))
        except ValueError:
            log.warning("Skipping malformed ID: %r", token)
    return ids


def load_env_file(env_path: Optional[str] = None) -> None:
    """Load KEY=VALUE pairs into os.environ without overriding what is already set."""
    env_path = env_path or os.environ.get("BOT_ENV_PATH", ".env")
    if not os.path.isfile(env_path):
        return
    try:
        with open(env_path, "r", encoding="utf-8", errors="ignore") as f:
            for raw in f:
                line = raw.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                k, v = line.split("=", 1)
                k = k.strip()
                v = v.strip().strip('"').strip("'")
                if k and k not in os.environ:
                    os.environ[k] = v
    except OSError as e:
        print(f"[BOOT] WARN: cannot load env from {env_path}: {e}", file=sys.stderr)


@dataclass
class Settings:
    bot_token: str
    admin_ids: Set[int] = field(default_factory=set)
    channel: str = ""
    free_mode: bool = False
    bot_username: str = ""
    port: int = 0
    sqlite_path: str = "./data/publisher_state.db"
    work_dir: str = "./data/artifacts"
    hosting_origin: str = "https://telegra.ph"
    fetch_timeout: int = 20
    upload_timeout: int = 60
    member_cache_ttl: int = 300
    member_cache_max: int = 500
    session_ttl: int = 24 * 60 * 60
    expire_sweep_interval: int = 60
    image_max_dim: int = 2560
    image_transform: bool = True
    schedule_tz: str = "UTC"


def read_settings() -> Settings:
    token = (os.getenv("BOT_TOKEN") or os.getenv("TELEGRAM_BOT_TOKEN") or "").strip()
    if not token:
        raise SystemExit("BOT_TOKEN is required")
    admins = parse_id_list(os.getenv("ADMIN_IDS", "")) | parse_id_list(os.getenv("ADMIN_ID", ""))
    return Settings(
        bot_token=token,
        admin_ids=admins,
        channel=(os.getenv("FORCE_SUB_CHANNEL") or "").strip().lstrip("@"),
        free_mode=flag("IS_FREE_MODE"),
        bot_username=(os.getenv("BOT_USERNAME") or "").strip().lstrip("@"),
        port=get_env_int("PORT", 0),
        sqlite_path=os.getenv("SQLITE_PATH", "./data/publisher_state.db"),
        work_dir=os.getenv("WORK_DIR", "./data/artifacts"),
        hosting_origin=(os.getenv("HOSTING_ORIGIN") or "https://telegra.ph").rstrip("/"),
        fetch_timeout=get_env_int("FETCH_TIMEOUT", 20),
        upload_timeout=get_env_int("UPLOAD_TIMEOUT", 60),
        member_cache_ttl=get_env_int("MEMBER_CACHE_TTL", 300),
        member_cache_max=get_env_int("MEMBER_CACHE_MAX", 500),
        session_ttl=get_env_int("SESSION_TTL", 24 * 60 * 60),
        expire_sweep_interval=get_env_int("EXPIRE_SWEEP_INTERVAL", 60),
        image_max_dim=get_env_int("IMAGE_MAX_DIM", 2560),
        image_transform=flag("IMAGE_TRANSFORM", True),
        schedule_tz=(os.getenv("SCHEDULE_TZ") or "UTC").strip(),
    )
