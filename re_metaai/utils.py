import re
import uuid
from typing import Any

from .config import DEFAULT_USER_AGENT

META_AI_URL = "https://www.meta.ai/"
META_AI_ORIGIN = "https://www.meta.ai"
COOKIE_DOMAIN = "meta.ai"

USER_AGENT = DEFAULT_USER_AGENT

BROWSER_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Sec-Ch-Ua": '"Google Chrome";v="131", "Chromium";v="131", "Not_A Brand";v="24"',
    "Sec-Ch-Ua-Mobile": "?0",
    "Sec-Ch-Ua-Platform": '"Linux"',
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Upgrade-Insecure-Requests": "1",
    "DNT": "1",
}

API_HEADERS = {
    "Content-Type": "application/json",
    "Origin": META_AI_ORIGIN,
    "Referer": META_AI_URL,
    "Sec-Fetch-Dest": "empty",
    "Sec-Fetch-Mode": "cors",
    "Sec-Fetch-Site": "same-origin",
}

_ESCAPE_PATTERN = re.compile(r'\\(u[0-9a-fA-F]{4}|["\\nt])')
_SIMPLE_ESCAPES = {"n": "\n", "t": "\t", '"': '"', "\\": "\\"}


def extract_value(text: str, start_marker: str, end_marker: str) -> str:
    """Return the text between ``start_marker`` and the next ``end_marker``.

    An empty string is returned when either marker is missing.
    """
    start = text.find(start_marker)
    if start == -1:
        return ""
    start += len(start_marker)
    end = text.find(end_marker, start)
    if end == -1:
        return ""
    return text[start:end]


def decode_escapes(raw: str) -> str:
    """Decode the JSON string escapes found in streamed answer text.

    Handles ``\\n``, ``\\"``, ``\\t``, ``\\\\`` and ``\\uXXXX`` (surrogate
    pairs are joined). Any other escape is left untouched.
    """

    def _replace(match: re.Match) -> str:
        token = match.group(1)
        if token.startswith("u"):
            return chr(int(token[1:], 16))
        return _SIMPLE_ESCAPES[token]

    decoded = _ESCAPE_PATTERN.sub(_replace, raw)
    if any(0xD800 <= ord(char) <= 0xDFFF for char in decoded):
        decoded = decoded.encode("utf-16-le", "surrogatepass").decode(
            "utf-16-le", "replace"
        )
    return decoded


def new_offline_threading_id() -> str:
    return f"{uuid.uuid4().hex[:8]}-{str(uuid.uuid4())[:32]}"


def cookies_to_dict(cookies: Any, domain: str = COOKIE_DOMAIN) -> dict[str, str]:
    """Flatten a cookie container into ``{name: value}`` for ``domain``.

    Accepts a curl_cffi ``Cookies`` object (anything exposing ``.jar``), a
    plain ``dict`` or a list of cookie dicts/objects.
    """
    if not cookies:
        return {}

    if isinstance(cookies, dict):
        return {str(key): str(value) for key, value in cookies.items() if value is not None}

    jar = cookies.jar if hasattr(cookies, "jar") else cookies

    result: dict[str, str] = {}
    for cookie in jar:
        if isinstance(cookie, dict):
            name = cookie.get("name")
            value = cookie.get("value")
            cookie_domain = cookie.get("domain", "") or ""
        else:
            name = getattr(cookie, "name", None)
            value = getattr(cookie, "value", None)
            cookie_domain = getattr(cookie, "domain", "") or ""
        if not name or value is None:
            continue
        normalized_domain = cookie_domain.lstrip(".")
        if normalized_domain and not normalized_domain.endswith(domain):
            continue
        result[name] = value
    return result


def cookie_header(cookies: dict[str, str]) -> str:
    return "; ".join(f"{key}={value}" for key, value in cookies.items() if value)
