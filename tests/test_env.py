"""
Tests for _env.py
"""

import os

import pytest

from _env import flag, get_env_int, load_env_file, parse_id_list, read_settings


@pytest.fixture
def clean_env(monkeypatch):
    for key in ("BOT_TOKEN", "TELEGRAM_BOT_TOKEN", "ADMIN_IDS", "ADMIN_ID", "FORCE_SUB_CHANNEL",
                "IS_FREE_MODE", "PORT", "HOSTING_ORIGIN", "IMAGE_TRANSFORM", "SCHEDULE_TZ"):
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_read_settings(clean_env):
    clean_env.setenv("BOT_TOKEN", " 123:abc ")
    clean_env.setenv("ADMIN_IDS", "1, 2 x")
    clean_env.setenv("ADMIN_ID", "3")
    clean_env.setenv("FORCE_SUB_CHANNEL", "@news")
    clean_env.setenv("IS_FREE_MODE", "yes")
    clean_env.setenv("HOSTING_ORIGIN", "https://telegra.ph/")
    s = read_settings()
    assert s.bot_token == "123:abc"
    assert s.admin_ids == {1, 2, 3}
    assert s.channel == "news"
    assert s.free_mode
    assert s.hosting_origin == "https://telegra.ph"
    assert s.image_transform
    assert s.schedule_tz == "UTC"


def test_missing_token_exits(clean_env):
    with pytest.raises(SystemExit):
        read_settings()


def test_bad_integer_exits(clean_env):
    clean_env.setenv("PORT", "eighty")
    with pytest.raises(SystemExit):
        get_env_int("PORT", 0)


@pytest.mark.parametrize("raw,expected", [("1", True), ("TRUE", True), ("off", False), ("", True)])
def test_flag(clean_env, raw, expected):
    clean_env.setenv("IMAGE_TRANSFORM", raw)
    assert flag("IMAGE_TRANSFORM", True) is expected


def test_parse_id_list_skips_garbage():
    assert parse_id_list("10,20 ; 30") == {10, 20, 30}
    assert parse_id_list("") == set()


def test_env_file_does_not_override(clean_env, tmp_path):
    env = tmp_path / "bot.env"
    env.write_text('# comment\nBOT_TOKEN="from-file"\nFORCE_SUB_CHANNEL=chan\nbroken line\n', encoding="utf-8")
    clean_env.setenv("FORCE_SUB_CHANNEL", "already")
    load_env_file(str(env))
    assert os.environ["BOT_TOKEN"] == "from-file"
    assert os.environ["FORCE_SUB_CHANNEL"] == "already"
    os.environ.pop("BOT_TOKEN", None)
