"""Browser-equivalent session acquisition.

A session is the set of cookie-like tokens the web app hands to an anonymous
(or logged-in) browser. The landing page may answer with an interstitial
challenge instead of content; the challenge is cleared by POSTing to the URL
embedded in its inline script and loading the page again.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Pattern, Sequence
from urllib.parse import quote

from .config import DEFAULT_COOKIE_CACHE_PATH
from .errors import SessionAcquisitionFailure
from .utils import (
    BROWSER_HEADERS,
    META_AI_ORIGIN,
    META_AI_URL,
    USER_AGENT,
    cookie_header,
    cookies_to_dict,
    extract_value,
)

logger = logging.getLogger(__name__)

SESSION_TTL_MS = 24 * 60 * 60 * 1000
REQUIRED_TOKENS = ("datr",)
KNOWN_TOKENS = ("datr", "_js_datr", "lsd", "abra_csrf", "fb_dtsg")

CHALLENGE_STATUS = 403
CHALLENGE_ROUNDS = 2
CHALLENGE_URL_PATTERN = re.compile(r"fetch\('([^']+)',")
CHALLENGE_MARKERS = ("rd_challenge", "__rd_verify")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Session:
    """Browser tokens plus the window in which they are trusted."""

    cookies: dict[str, str]
    acquired_at: int
    expires_at: int

    @classmethod
    def new(cls, cookies: Mapping[str, str], now_ms: Optional[int] = None) -> "Session":
        now_ms = _now_ms() if now_ms is None else now_ms
        return cls(
            cookies={key: value for key, value in cookies.items() if value},
            acquired_at=now_ms,
            expires_at=now_ms + SESSION_TTL_MS,
        )

    @property
    def device_id(self) -> str:
        return self.cookies.get("datr") or self.cookies.get("_js_datr", "")

    @property
    def anti_forgery_token(self) -> str:
        return self.cookies.get("lsd") or self.cookies.get("abra_csrf", "")

    @property
    def is_expired(self) -> bool:
        return _now_ms() >= self.expires_at

    def missing(self, required: Iterable[str]) -> list[str]:
        return [name for name in required if not self.cookies.get(name)]

    def to_dict(self) -> dict:
        return {
            "cookies": dict(self.cookies),
            "timestamp": self.acquired_at,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Session":
        cookies = data["cookies"]
        if not isinstance(cookies, Mapping):
            raise ValueError("cookies must be an object")
        acquired_at = data["timestamp"]
        expires_at = data["expiresAt"]
        if not isinstance(acquired_at, (int, float)) or not isinstance(expires_at, (int, float)):
            raise ValueError("timestamp and expiresAt must be numbers")
        return cls(
            cookies={
                str(key): str(value)
                for key, value in cookies.items()
                if value not in (None, "")
            },
            acquired_at=int(acquired_at),
            expires_at=int(expires_at),
        )


class SessionCache:
    """Single-slot on-disk session cache.

    The file is shared between processes without locking, so whatever is read
    back is re-validated and discarded when it is not usable.
    """

    def __init__(self, path: str | Path = DEFAULT_COOKIE_CACHE_PATH):
        self.path = Path(path)

    def load(self, required: Iterable[str] = REQUIRED_TOKENS) -> Optional[Session]:
        if not self.path.is_file():
            return None

        try:
            session = Session.from_dict(json.loads(self.path.read_text(encoding="utf-8")))
        except (OSError, ValueError, TypeError, KeyError) as exc:
            logger.warning("Discarding unreadable session cache %s: %s", self.path, exc)
            self.clear()
            return None

        if session.is_expired:
            logger.info("Cached session expired, discarding %s", self.path)
            self.clear()
            return None

        missing = session.missing(required)
        if missing:
            logger.info("Cached session lacks %s, discarding %s", ", ".join(missing), self.path)
            self.clear()
            return None

        return session

    def save(self, session: Session) -> Path:
        if self.path.parent and not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(session.to_dict(), indent=2), encoding="utf-8")
        return self.path

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


class ExtractionStrategy:
    """One way of pulling tokens out of a page body."""

    name = "strategy"

    def try_extract(self, body: str) -> dict[str, str]:
        raise NotImplementedError


@dataclass
class MarkerStrategy(ExtractionStrategy):
    """Exact ``start``/``end`` substring markers per token."""

    name: str
    markers: Mapping[str, tuple[str, str]] = field(default_factory=dict)

    def try_extract(self, body: str) -> dict[str, str]:
        found = {}
        for token, (start, end) in self.markers.items():
            value = extract_value(body, start, end)
            if value:
                found[token] = value
        return found


@dataclass
class RegexStrategy(ExtractionStrategy):
    """Looser regular expressions; the first group is the token value."""

    name: str
    patterns: Mapping[str, Sequence[str | Pattern]] = field(default_factory=dict)

    def try_extract(self, body: str) -> dict[str, str]:
        found = {}
        for token, patterns in self.patterns.items():
            for pattern in patterns:
                match = re.search(pattern, body)
                if match and match.group(1):
                    found[token] = match.group(1)
                    break
        return found


# Tried in order; append new strategies here when the markup shifts again.
DEFAULT_STRATEGIES: tuple[ExtractionStrategy, ...] = (
    MarkerStrategy(
        "cookie-value-markers",
        {
            "_js_datr": ('_js_datr":{"value":"', '",'),
            "datr": ('"datr":{"value":"', '",'),
            "abra_csrf": ('abra_csrf":{"value":"', '",'),
            "lsd": ('"LSD",[],{"token":"', '"}'),
            "fb_dtsg": ('DTSGInitData",[],{"token":"', '"'),
        },
    ),
    RegexStrategy(
        "json-token-patterns",
        {
            "datr": (r'"datr"\s*:\s*"([^"]+)"', r'"_js_datr"\s*:\s*\{\s*"value"\s*:\s*"([^"]+)"'),
            "lsd": (r'"LSD"\s*,\s*\[\s*\]\s*,\s*\{\s*"token"\s*:\s*"([^"]+)"', r'"lsd"\s*:\s*"([^"]+)"'),
            "abra_csrf": (r'"abra_csrf"\s*:\s*\{\s*"value"\s*:\s*"([^"]+)"', r'"abra_csrf"\s*:\s*"([^"]+)"'),
            "fb_dtsg": (r'"dtsg"\s*:\s*\{\s*"token"\s*:\s*"([^"]+)"',),
        },
    ),
    RegexStrategy(
        "form-inputs",
        {
            "lsd": (r'name="lsd"\s+value="([^"]+)"', r'value="([^"]+)"\s+name="lsd"'),
            "jazoest": (r'name="jazoest"\s+value="([^"]+)"', r'value="([^"]+)"\s+name="jazoest"'),
        },
    ),
)


def extract_tokens(
    body: str,
    strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
    expected: Iterable[str] = KNOWN_TOKENS,
) -> dict[str, str]:
    """Run ``strategies`` in order, keeping the first value found per token."""

    tokens: dict[str, str] = {}
    for strategy in strategies:
        for token, value in strategy.try_extract(body).items():
            if token not in tokens:
                logger.debug("Token %s extracted by %s", token, strategy.name)
                tokens[token] = value

    empty = [name for name in expected if not tokens.get(name)]
    if empty:
        logger.debug("Tokens not found in page body: %s", ", ".join(empty))
    return tokens


def looks_like_challenge(response) -> bool:
    if response is None or response.status_code != CHALLENGE_STATUS:
        return False
    body = response.text or ""
    return bool(CHALLENGE_URL_PATTERN.search(body)) or any(
        marker in body for marker in CHALLENGE_MARKERS
    )


def extract_challenge_url(body: str) -> Optional[str]:
    match = CHALLENGE_URL_PATTERN.search(body or "")
    if not match:
        return None
    target = match.group(1)
    if target.startswith(("http://", "https://")):
        return target
    return META_AI_ORIGIN + ("" if target.startswith("/") else "/") + target


class SessionAcquirer:
    """Acquire a session the way an anonymous browser would.

    Args:
        http: A ``curl_cffi.requests.AsyncSession`` (or compatible object)
            whose cookie jar accumulates across calls.
        cache (SessionCache): The single-slot cache.
        required_tokens: Tokens without which a session is rejected.
        strategies: Ordered extraction strategies.
        challenge_delay (float): Seconds to wait after posting a challenge.
    """

    def __init__(
        self,
        http,
        cache: Optional[SessionCache] = None,
        required_tokens: Sequence[str] = REQUIRED_TOKENS,
        strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
        challenge_delay: float = 1.0,
    ):
        self.http = http
        self.cache = cache or SessionCache()
        self.required_tokens = tuple(required_tokens)
        self.strategies = tuple(strategies)
        self.challenge_delay = challenge_delay

    async def acquire(self, force_refresh: bool = False) -> Session:
        """Return a usable session, from the cache unless ``force_refresh``.

        Raises:
            SessionAcquisitionFailure: If no method yields the required tokens.
        """
        if not force_refresh:
            cached = self.cache.load(self.required_tokens)
            if cached is not None:
                logger.debug("Reusing cached session from %s", self.cache.path)
                return cached

        tokens = await self._collect_tokens()

        jar = cookies_to_dict(self.http.cookies)
        missing = [name for name in self.required_tokens if not tokens.get(name)]
        if missing:
            logger.info("Falling back to the cookie jar for %s", ", ".join(missing))
        for name, value in jar.items():
            if value and not tokens.get(name):
                tokens[name] = value

        session = Session.new(tokens)
        still_missing = session.missing(self.required_tokens)
        if still_missing:
            raise SessionAcquisitionFailure(
                f"required token(s) missing: {', '.join(still_missing)}"
            )

        self.cache.save(session)
        logger.info("Acquired a new session (expires in %dh)", SESSION_TTL_MS // 3_600_000)
        return session

    async def _collect_tokens(self) -> dict[str, str]:
        body = await self._fetch_landing_page()
        return extract_tokens(body, self.strategies)

    async def _fetch_landing_page(self) -> str:
        response = await self.http.get(
            META_AI_URL, headers=BROWSER_HEADERS, allow_redirects=False
        )

        for round_number in range(1, CHALLENGE_ROUNDS + 1):
            if not looks_like_challenge(response):
                break

            challenge_url = extract_challenge_url(response.text)
            if not challenge_url:
                raise SessionAcquisitionFailure(
                    "challenge page did not include a challenge URL", response.text
                )

            logger.info(
                "Landing page challenged, resolving (round %d/%d)",
                round_number,
                CHALLENGE_ROUNDS,
            )
            await self.http.post(
                challenge_url,
                headers={
                    **BROWSER_HEADERS,
                    "Referer": META_AI_URL,
                    "Origin": META_AI_ORIGIN,
                    "Content-Length": "0",
                    "Sec-Fetch-Dest": "empty",
                    "Sec-Fetch-Mode": "cors",
                    "Sec-Fetch-Site": "same-origin",
                },
            )
            await asyncio.sleep(self.challenge_delay)
            response = await self.http.get(
                META_AI_URL,
                headers={**BROWSER_HEADERS, "Sec-Fetch-Site": "same-origin", "Referer": META_AI_URL},
                allow_redirects=True,
            )

        if looks_like_challenge(response):
            raise SessionAcquisitionFailure(
                f"challenge still present after {CHALLENGE_ROUNDS} attempts", response.text
            )
        if response.status_code >= 500:
            raise SessionAcquisitionFailure(
                f"landing page returned HTTP {response.status_code}", response.text
            )
        return response.text or ""


FB_LOGIN_URL = "https://www.facebook.com/login/?next"
FB_OIDC_URL = (
    "https://www.facebook.com/oidc/?app_id=1358015658191005&scope=openid%20linking"
    "&response_type=code&redirect_uri=https%3A%2F%2Fwww.meta.ai%2Fauth%2F"
    "&no_universal_links=1&deoia=1&state={state}"
)
META_AI_STATE_URL = "https://www.meta.ai/state/"

LOGIN_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Referer": "https://www.facebook.com/",
    "Origin": "https://www.facebook.com",
    "DNT": "1",
    "Sec-GPC": "1",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "same-origin",
    "Sec-Fetch-User": "?1",
}


class CredentialSessionAcquirer(SessionAcquirer):
    """Acquire a logged-in session from account credentials.

    Logs in on the identity provider, then links the identity to the web app
    through its OIDC redirect chain. The resulting session has the same shape
    as an anonymous one plus the ``abra_sess`` login cookie.
    """

    def __init__(
        self,
        http,
        email: str,
        password: str,
        cache: Optional[SessionCache] = None,
        required_tokens: Sequence[str] = ("datr", "abra_sess"),
        strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
        challenge_delay: float = 1.0,
    ):
        super().__init__(
            http,
            cache=cache,
            required_tokens=required_tokens,
            strategies=strategies,
            challenge_delay=challenge_delay,
        )
        self.email = email
        self.password = password

    async def _collect_tokens(self) -> dict[str, str]:
        provider_cookies = await self._login()
        landing_tokens = await super()._collect_tokens()

        state_response = await self.http.post(
            META_AI_STATE_URL,
            data={"__a": "1", "lsd": landing_tokens.get("lsd", "")},
            headers={
                "User-Agent": USER_AGENT,
                "Accept": "*/*",
                "Content-Type": "application/x-www-form-urlencoded",
                "Origin": META_AI_ORIGIN,
                "Referer": META_AI_URL,
            },
        )
        state = extract_value(state_response.text or "", '"state":"', '"')
        if not state:
            raise SessionAcquisitionFailure(
                "identity linking did not return a state value", state_response.text
            )

        oidc_response = await self.http.get(
            FB_OIDC_URL.format(state=quote(state, safe="")),
            headers={
                **LOGIN_HEADERS,
                "Sec-Fetch-Site": "cross-site",
                "Cookie": cookie_header(
                    {
                        **{
                            name: provider_cookies.get(name, "")
                            for name in ("datr", "sb", "c_user", "xs", "fr")
                        },
                        "abra_csrf": landing_tokens.get("abra_csrf", ""),
                    }
                ),
            },
            allow_redirects=False,
        )
        next_url = oidc_response.headers.get("location") or oidc_response.headers.get("Location")
        if not next_url:
            raise SessionAcquisitionFailure(
                "identity provider did not redirect back to the web app",
                oidc_response.text,
            )

        await self.http.get(next_url, headers={"User-Agent": USER_AGENT})

        tokens = dict(landing_tokens)
        tokens.update(cookies_to_dict(self.http.cookies))
        return tokens

    async def _login(self) -> dict[str, str]:
        login_page = await self.http.get(FB_LOGIN_URL, headers=BROWSER_HEADERS)
        form = extract_tokens(login_page.text or "", self.strategies, expected=("lsd", "jazoest"))
        if not form.get("lsd"):
            raise SessionAcquisitionFailure("login form did not include an lsd token")

        await self.http.post(
            FB_LOGIN_URL,
            data={
                "lsd": form["lsd"],
                "jazoest": form.get("jazoest", ""),
                "login_source": "comet_headerless_login",
                "email": self.email,
                "pass": self.password,
                "login": "1",
                "next": "",
            },
            headers={**LOGIN_HEADERS, "Content-Type": "application/x-www-form-urlencoded"},
            allow_redirects=False,
        )

        provider_cookies = cookies_to_dict(self.http.cookies, domain="facebook.com")
        if not provider_cookies.get("sb") or not provider_cookies.get("xs"):
            raise SessionAcquisitionFailure(
                "login was rejected, please check your credentials"
            )
        logger.info("Logged in on the identity provider")
        return provider_cookies
