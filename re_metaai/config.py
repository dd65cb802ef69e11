from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Optional

DEFAULT_CONFIG_PATH = "config.ini"
DEFAULT_COOKIE_CACHE_PATH = ".metaai-cookies.json"
DEFAULT_LOCALE = "en-US"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)

SECTION = "metaai"


def _read_option(config_path: str | Path, option: str, placeholder: str) -> Optional[str]:
    config_file = Path(config_path).expanduser()
    if not config_file.is_file():
        return None

    parser = configparser.ConfigParser()
    parser.read(config_file)
    value = parser.get(SECTION, option, fallback="").strip()
    if value and value != placeholder:
        return value
    return None


def _lookup(env_name: str, option: str, config_path: str | Path) -> Optional[str]:
    env_value = os.environ.get(env_name)
    if env_value is not None:
        return env_value.strip() or None
    return _read_option(config_path, option, f"YOUR_{option.upper()}")


def get_credentials(
    config_path: str | Path = DEFAULT_CONFIG_PATH,
) -> tuple[Optional[str], Optional[str]]:
    """Return the ``(email, password)`` pair for credential login.

    Both values are read from ``RE_METAAI_EMAIL``/``RE_METAAI_PASSWORD`` or
    from the ``[metaai]`` section of ``config.ini``. When either half is
    missing the pair is ``(None, None)`` and the headless session flow is used.
    """

    email = _lookup("RE_METAAI_EMAIL", "email", config_path)
    password = _lookup("RE_METAAI_PASSWORD", "password", config_path)
    if email and password:
        return email, password
    return None, None


def get_cookie_cache_path(config_path: str | Path = DEFAULT_CONFIG_PATH) -> Path:
    """Return the location of the single-slot session cache file."""

    value = _lookup("RE_METAAI_COOKIE_CACHE", "cookie_cache", config_path)
    return Path(value or DEFAULT_COOKIE_CACHE_PATH).expanduser()


def get_default_locale(config_path: str | Path = DEFAULT_CONFIG_PATH) -> str:
    return _lookup("RE_METAAI_LOCALE", "locale", config_path) or DEFAULT_LOCALE


def get_default_timezone(config_path: str | Path = DEFAULT_CONFIG_PATH) -> str:
    """Return the timezone label sent with every turn.

    Falls back to the ``TZ`` environment variable and finally ``UTC``; the
    abbreviations in ``time.tzname`` are not IANA names and are not used.
    """

    value = _lookup("RE_METAAI_TIMEZONE", "timezone", config_path)
    if value:
        return value
    tz_env = os.environ.get("TZ", "").strip()
    if "/" in tz_env:
        return tz_env.lstrip(":")
    return "UTC"


def get_default_user_agent(config_path: str | Path = DEFAULT_CONFIG_PATH) -> str:
    return _lookup("RE_METAAI_USER_AGENT", "user_agent", config_path) or DEFAULT_USER_AGENT


def get_proxy(config_path: str | Path = DEFAULT_CONFIG_PATH) -> Optional[dict]:
    """Return a proxies mapping for the HTTP session, if one is configured."""

    proxy = _lookup("RE_METAAI_PROXY", "proxy", config_path)
    if not proxy:
        return None
    return {"http": proxy, "https": proxy}
