"""Access token negotiation.

The web app issues a short-lived access token to a logged-out visitor once
the terms of service are accepted. The token lives only in memory and is
re-negotiated for every new process, new session, or after auth failures.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Union

from curl_cffi import CurlError

from .errors import TokenNegotiationFailure
from .session import Session
from .utils import API_HEADERS, USER_AGENT

logger = logging.getLogger(__name__)

GRAPHQL_URL = "https://www.meta.ai/api/graphql"
SOURCES_URL = "https://graph.meta.ai/graphql?locale=user"

PREPARATORY_DOC_IDS = (
    "71a9538c7cb4b536f0b59bd14130535e",
    "9ddc0d27be6b8029c988ca2d4d1f2725",
    "c204727df77cb2e34332f8ac2b6832e7",
)
ACCEPT_TOS_DOC_ID = "ddce908d24ed917753b713f3b2e377c1"
SOURCES_DOC_ID = "6946734308765963"
DATE_OF_BIRTH = "1999-01-01"


@dataclass
class TokenResult:
    access_token: str
    user_id: Optional[str] = None
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class UnparsedResult:
    """A response that could not be mapped onto a known result shape."""

    reason: str
    raw: Any = field(default=None, repr=False)


@dataclass
class SourceFetchResult:
    references: list[dict] = field(default_factory=list)
    raw: Any = field(default=None, repr=False)


def parse_token_response(payload: Any) -> Union[TokenResult, UnparsedResult]:
    if not isinstance(payload, dict):
        return UnparsedResult("response was not a JSON object", payload)

    data = payload.get("data")
    accepted = data.get("acceptTOSForLoggedOut") if isinstance(data, dict) else None
    viewer = accepted.get("viewer") if isinstance(accepted, dict) else None
    if not isinstance(viewer, dict):
        errors = payload.get("errors")
        if errors:
            return UnparsedResult(f"upstream returned errors: {errors}", payload)
        return UnparsedResult("viewer missing from response", payload)

    access_token = viewer.get("accessToken")
    if not access_token:
        return UnparsedResult("accessToken missing from response", payload)

    return TokenResult(
        access_token=access_token,
        user_id=viewer.get("abraUserId") or None,
        raw=payload,
    )


class TokenNegotiator:
    """Exchange a session for an access token and keep it in memory.

    A token is only ever handed out together with the session it was derived
    from; asking for a token with a different session renegotiates.
    """

    def __init__(
        self,
        http,
        preparatory_doc_ids: Sequence[str] = PREPARATORY_DOC_IDS,
        accept_tos_doc_id: str = ACCEPT_TOS_DOC_ID,
        date_of_birth: str = DATE_OF_BIRTH,
        settle_delay: float = 0.3,
    ):
        self.http = http
        self.preparatory_doc_ids = tuple(preparatory_doc_ids)
        self.accept_tos_doc_id = accept_tos_doc_id
        self.date_of_birth = date_of_birth
        self.settle_delay = settle_delay
        self.token: Optional[TokenResult] = None
        self._session: Optional[Session] = None

    def invalidate(self) -> None:
        if self.token is not None:
            logger.info("Discarding access token")
        self.token = None
        self._session = None

    def _headers(self, session: Session) -> dict[str, str]:
        headers = {**API_HEADERS, "User-Agent": USER_AGENT}
        if session.anti_forgery_token:
            headers["X-FB-LSD"] = session.anti_forgery_token
        return headers

    async def _prepare(self, session: Session) -> None:
        for doc_id in self.preparatory_doc_ids:
            try:
                await self.http.post(
                    GRAPHQL_URL,
                    json={"doc_id": doc_id, "variables": {}},
                    headers=self._headers(session),
                    cookies=session.cookies,
                )
            except Exception as exc:  # noqa: BLE001 - warm-up calls are optional.
                logger.debug("Preparatory call %s failed: %s", doc_id, exc)
        await asyncio.sleep(self.settle_delay)

    async def negotiate(self, session: Session) -> TokenResult:
        """Return the access token for ``session``, negotiating if needed.

        Raises:
            TokenNegotiationFailure: If the upstream does not return a token.
        """
        if self.token is not None and self._session is session:
            return self.token

        self.invalidate()
        await self._prepare(session)

        payload = {
            "doc_id": self.accept_tos_doc_id,
            "variables": {"input": {"dateOfBirth": self.date_of_birth}},
        }
        if session.anti_forgery_token:
            payload["lsd"] = session.anti_forgery_token

        response = await self.http.post(
            GRAPHQL_URL,
            json=payload,
            headers=self._headers(session),
            cookies=session.cookies,
        )

        try:
            body = response.json()
        except ValueError:
            raise TokenNegotiationFailure(
                f"response was not JSON (HTTP {response.status_code})", response.text
            ) from None

        result = parse_token_response(body)
        if isinstance(result, UnparsedResult):
            raise TokenNegotiationFailure(result.reason, response.text)

        self.token = result
        self._session = session
        logger.info("Negotiated access token (user id %s)", result.user_id or "unknown")
        await asyncio.sleep(self.settle_delay)
        return result

    async def fetch_sources(self, access_token: str, fetch_id: str) -> SourceFetchResult:
        """Fetch the search references attached to a response.

        Sources are optional enrichment, so failures produce an empty result.
        """
        try:
            response = await self.http.post(
                SOURCES_URL,
                data={
                    "access_token": access_token,
                    "fb_api_caller_class": "RelayModern",
                    "fb_api_req_friendly_name": "AbraSearchPluginDialogQuery",
                    "variables": json.dumps({"abraMessageFetchID": fetch_id}),
                    "server_timestamps": "true",
                    "doc_id": SOURCES_DOC_ID,
                },
                headers={
                    "User-Agent": USER_AGENT,
                    "Accept": "*/*",
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Origin": "https://www.meta.ai",
                    "Referer": "https://www.meta.ai/",
                },
            )
        except CurlError as exc:
            logger.warning("Source fetch for %s failed: %s", fetch_id, exc)
            return SourceFetchResult()

        try:
            body = response.json()
        except ValueError:
            logger.warning("Source fetch for %s returned non-JSON content", fetch_id)
            return SourceFetchResult(raw=response.text)

        data = body.get("data") if isinstance(body, dict) else None
        message = data.get("message") if isinstance(data, dict) else None
        search_results = message.get("searchResults") if isinstance(message, dict) else None
        references = (
            search_results.get("references") if isinstance(search_results, dict) else None
        )
        if not isinstance(references, list):
            logger.debug("No references in source fetch for %s", fetch_id)
            return SourceFetchResult(raw=body)

        return SourceFetchResult(
            references=[item for item in references if isinstance(item, dict)],
            raw=body,
        )
