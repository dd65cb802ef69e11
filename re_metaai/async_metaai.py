from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Optional

from curl_cffi import CurlError
from curl_cffi.requests import AsyncSession

from .auth import TokenNegotiator, TokenResult
from .config import (
    DEFAULT_CONFIG_PATH,
    get_cookie_cache_path,
    get_credentials,
    get_default_locale,
    get_default_timezone,
    get_default_user_agent,
    get_proxy,
)
from .encoder import encode_turn
from .errors import MessageTooLong, MetaAIError, RetryError, TokenNegotiationFailure
from .session import CredentialSessionAcquirer, Session, SessionAcquirer, SessionCache
from .transport import DEFAULT_TIMEOUT, TransportSession, max_payload_size
from .utils import new_offline_threading_id

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_DELAY = 2.0
IMPERSONATE = "chrome"
USER_ID_RESERVE = 64


@dataclass
class Media:
    url: str
    type: str
    prompt: Optional[str] = None


@dataclass
class PromptResponse:
    message: str
    sources: list[dict] = field(default_factory=list)
    media: list[Media] = field(default_factory=list)
    fetch_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "sources": list(self.sources),
            "media": [asdict(item) for item in self.media],
        }


@dataclass
class Conversation:
    id: str
    established: bool = False

    @classmethod
    def new(cls) -> "Conversation":
        return cls(id=str(uuid.uuid4()))


@dataclass(frozen=True)
class Turn:
    request_id: str
    offline_threading_id: str
    message_text: str
    created_at: float

    @classmethod
    def new(cls, message_text: str) -> "Turn":
        return cls(
            request_id=str(uuid.uuid4()),
            offline_threading_id=new_offline_threading_id(),
            message_text=message_text,
            created_at=time.time(),
        )


class AsyncMetaAI:
    def __init__(
        self,
        email: Optional[str] = None,
        password: Optional[str] = None,
        proxies: Optional[dict] = None,
        cookie_cache_path: Optional[str | Path] = None,
        locale: Optional[str] = None,
        timezone: Optional[str] = None,
        user_agent: Optional[str] = None,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
        timeout: float = DEFAULT_TIMEOUT,
        config_path: str | Path = DEFAULT_CONFIG_PATH,
        connect: Optional[Callable] = None,
    ):
        """
        Initializes an instance of the class.

        Args:
            email (Optional[str]): Account email for the credential login flow.
                Read from the configuration when neither email nor password is given.
            password (Optional[str]): Account password for the credential login flow.
            proxies (Optional[dict]): A dictionary of proxy settings. Defaults to None.
            cookie_cache_path (Optional[str | Path]): Location of the session cache file.
            locale (Optional[str]): Locale reported with each turn.
            timezone (Optional[str]): Timezone reported with each turn.
            user_agent (Optional[str]): User agent reported with each turn.
            max_retries (int): Total attempts per prompt. Defaults to 3.
            retry_delay (float): Seconds to wait between attempts. Defaults to 2.
            timeout (float): Wall-clock bound for one streamed turn. Defaults to 30.
            config_path (str | Path): ``config.ini`` to read defaults from.
            connect (Optional[Callable]): Websocket connect factory override.
        """
        if email is None and password is None:
            email, password = get_credentials(config_path)

        self.email = email
        self.password = password
        self.proxies = proxies if proxies is not None else get_proxy(config_path)
        self.cache = SessionCache(cookie_cache_path or get_cookie_cache_path(config_path))
        self.locale = locale or get_default_locale(config_path)
        self.timezone = timezone or get_default_timezone(config_path)
        self.user_agent = user_agent or get_default_user_agent(config_path)
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.connect = connect

        self.http = None
        self.acquirer: Optional[SessionAcquirer] = None
        self.negotiator: Optional[TokenNegotiator] = None
        self.session: Optional[Session] = None
        self.conversation: Optional[Conversation] = None
        self._turn_lock: Optional[asyncio.Lock] = None

    @property
    def is_authed(self) -> bool:
        return bool(self.email and self.password)

    @property
    def access_token(self) -> Optional[str]:
        if self.negotiator is None or self.negotiator.token is None:
            return None
        return self.negotiator.token.access_token

    async def __aenter__(self):
        await self._open()
        return self

    async def __aexit__(self, *args):
        await self._close()

    async def open(self) -> None:
        await self._open()

    async def close(self) -> None:
        await self._close()

    async def ensure_session(self, force_refresh: bool = False) -> Session:
        return await self._ensure_session(force_refresh)

    async def ensure_access_token(self, force_refresh: bool = False) -> TokenResult:
        return await self._ensure_access_token(force_refresh)

    def reset_conversation(self) -> None:
        """Forget the current conversation; session and token are kept."""
        self.conversation = None

    async def reset_session(self) -> None:
        """Drop the cached session and the access token derived from it."""
        await self._reset_session()

    async def prompt(
        self,
        message: str,
        new_conversation: bool = False,
        fetch_sources: bool = False,
    ) -> PromptResponse:
        """
        Send a message and wait for the complete answer.

        Args:
            message (str): The user's message, must not be empty.
            new_conversation (bool): Start a new conversation first.
            fetch_sources (bool): Look up search references when the stream
                announced any. Defaults to False.

        Returns:
            PromptResponse: The answer text plus sources and media.

        Raises:
            ValueError: If ``message`` is empty.
            MessageTooLong: If ``message`` cannot fit in a single turn.
            RetryError: If every attempt failed.
        """
        return await self._prompt(message, new_conversation, fetch_sources)

    async def _open(self) -> None:
        if self.http is None:
            self.http = AsyncSession(impersonate=IMPERSONATE, proxies=self.proxies, timeout=60)
        if self.acquirer is None:
            if self.is_authed:
                self.acquirer = CredentialSessionAcquirer(
                    self.http, self.email, self.password, cache=self.cache
                )
            else:
                self.acquirer = SessionAcquirer(self.http, cache=self.cache)
        if self.negotiator is None:
            self.negotiator = TokenNegotiator(self.http)

    async def _close(self) -> None:
        if self.http is not None:
            await self.http.close()
        self.http = None
        self.acquirer = None
        self.negotiator = None

    async def _ensure_session(self, force_refresh: bool = False) -> Session:
        await self._open()
        session = self.session
        if (
            session is not None
            and not force_refresh
            and not session.is_expired
            and not session.missing(self.acquirer.required_tokens)
        ):
            return session
        self.session = await self.acquirer.acquire(force_refresh=force_refresh)
        return self.session

    async def _ensure_access_token(self, force_refresh: bool = False) -> TokenResult:
        session = await self._ensure_session(force_refresh)
        return await self.negotiator.negotiate(session)

    async def _reset_session(self) -> None:
        self.cache.clear()
        self.session = None
        if self.negotiator is not None:
            self.negotiator.invalidate()

    def _check_message_size(self, message: str) -> None:
        # The user id is only known after negotiation, so it is padded.
        turn = Turn.new(message)
        size = len(
            encode_turn(
                Conversation.new().id,
                turn.request_id,
                turn.offline_threading_id,
                "0" * USER_ID_RESERVE,
                message,
                self.user_agent,
                self.locale,
                self.timezone,
            )
        )
        limit = max_payload_size(len(turn.request_id))
        if size > limit:
            raise MessageTooLong(size, limit)

    async def _prompt(
        self,
        message: str,
        new_conversation: bool,
        fetch_sources: bool,
    ) -> PromptResponse:
        if not isinstance(message, str) or not message.strip():
            raise ValueError("message must be a non-empty string")
        self._check_message_size(message)

        if self._turn_lock is None:
            self._turn_lock = asyncio.Lock()

        async with self._turn_lock:
            if self.conversation is None or new_conversation:
                self.conversation = Conversation.new()
            conversation = self.conversation

            last_error: Optional[BaseException] = None
            force_refresh = False
            for attempt in range(1, self.max_retries + 1):
                if attempt > 1:
                    logger.warning(
                        "Retrying... Attempt %d/%d after: %s", attempt, self.max_retries, last_error
                    )
                    if self.negotiator is not None:
                        self.negotiator.invalidate()
                    await asyncio.sleep(self.retry_delay)

                try:
                    response = await self._run_turn(
                        conversation, Turn.new(message), fetch_sources, force_refresh
                    )
                except (MetaAIError, CurlError) as exc:
                    last_error = exc
                    force_refresh = isinstance(exc, TokenNegotiationFailure)
                    continue

                conversation.established = True
                return response

            raise RetryError(self.max_retries, last_error) from last_error

    async def _run_turn(
        self,
        conversation: Conversation,
        turn: Turn,
        fetch_sources: bool,
        force_refresh: bool,
    ) -> PromptResponse:
        token = await self._ensure_access_token(force_refresh)

        def build_payload() -> bytes:
            return encode_turn(
                conversation.id,
                turn.request_id,
                turn.offline_threading_id,
                token.user_id or "",
                turn.message_text,
                self.user_agent,
                self.locale,
                self.timezone,
            )

        transport = TransportSession(
            token.access_token,
            conversation.id,
            timeout=self.timeout,
            user_agent=self.user_agent,
            connect=self.connect,
        )
        result = await transport.run(turn.request_id, build_payload)

        sources: list[dict] = []
        if fetch_sources and result.fetch_id:
            fetched = await self.negotiator.fetch_sources(token.access_token, result.fetch_id)
            sources = fetched.references

        return PromptResponse(message=result.text, sources=sources, fetch_id=result.fetch_id)
