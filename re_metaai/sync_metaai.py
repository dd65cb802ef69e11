import asyncio
from typing import Optional

from .async_metaai import AsyncMetaAI, PromptResponse
from .auth import TokenResult
from .session import Session


class SyncMetaAI(AsyncMetaAI):
    """Blocking flavour of :class:`AsyncMetaAI`.

    Every call runs on a private event loop owned by the instance, so the
    underlying HTTP session and its cookie jar survive between calls. Use it
    as a context manager or call :meth:`close` when done.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _run(self, coroutine):
        if self._loop is None or self._loop.is_closed():
            self._loop = asyncio.new_event_loop()
        return self._loop.run_until_complete(coroutine)

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *args):
        self.close()

    def open(self) -> None:
        self._run(self._open())

    def close(self) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        try:
            self._loop.run_until_complete(self._close())
        finally:
            self._loop.close()
            self._loop = None

    def ensure_session(self, force_refresh: bool = False) -> Session:
        return self._run(self._ensure_session(force_refresh))

    def ensure_access_token(self, force_refresh: bool = False) -> TokenResult:
        return self._run(self._ensure_access_token(force_refresh))

    def reset_session(self) -> None:
        self._run(self._reset_session())

    def prompt(
        self,
        message: str,
        new_conversation: bool = False,
        fetch_sources: bool = False,
    ) -> PromptResponse:
        """
        Send a message and block until the complete answer arrives.

        Args:
            message (str): The user's message, must not be empty.
            new_conversation (bool): Start a new conversation first.
            fetch_sources (bool): Look up search references when available.

        Returns:
            PromptResponse: The answer text plus sources and media.
        """
        return self._run(self._prompt(message, new_conversation, fetch_sources))
