"""Token-endpoint response capture via Chrome DevTools Protocol."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

import nodriver.cdp.network as network

from ..harvest.scopes import ResourceScope, match_scope

logger = logging.getLogger(__name__)


@dataclass
class TokenResponse:
    """A token-endpoint exchange observed on the page."""

    request_id: str
    url: str
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    # Filled in as the response arrives
    status: int | None = None
    scope: str | None = None
    expires_in: int | None = None
    accepted: bool = False


class TokenResponseCapture:
    """Listen for OAuth token-endpoint responses and keep their access tokens.

    The capture is wired once, when the session is created, and runs on the
    browser's event stream between controller ticks. The controller only
    reads :meth:`snapshot` at tick boundaries.

    Usage:
        capture = TokenResponseCapture(page, scopes=TEAMS_SCOPES)
        await capture.enable()

        # ... SSO completes, the app requests tokens ...

        tokens = capture.snapshot()
        expires_in = capture.expiry_hint()
    """

    def __init__(
        self,
        page,
        *,
        scopes: Iterable[ResourceScope],
        endpoint_marker: str = "/oauth2/v2.0/token",
        max_body_chars: int = 200_000,
    ):
        self.page = page
        self.scopes = tuple(scopes)
        self.endpoint_marker = endpoint_marker.lower()
        self.max_body_chars = max_body_chars

        self.responses: dict[str, TokenResponse] = {}
        self._tokens: dict[str, str] = {}
        self._expires_in: dict[str, int] = {}
        self._enabled = False

    def is_token_endpoint(self, url: str | None) -> bool:
        if not isinstance(url, str) or not url:
            return False
        return self.endpoint_marker in url.lower()

    async def enable(self) -> None:
        """Enable network monitoring on the page."""
        if self._enabled:
            return

        try:
            await self.page.send(network.enable())

            self.page.add_handler(network.RequestWillBeSent, self._on_request)
            self.page.add_handler(network.ResponseReceived, self._on_response)
            self.page.add_handler(network.LoadingFinished, self._on_loading_finished)
            self.page.add_handler(network.LoadingFailed, self._on_loading_failed)

            self._enabled = True
            logger.debug("Token response capture enabled")
        except Exception as exc:
            logger.warning("Could not enable token response capture: %s", exc)

    async def _on_request(self, event: network.RequestWillBeSent) -> None:
        try:
            url = event.request.url
            if not self.is_token_endpoint(url):
                return
            request_id = str(event.request_id)
            self.responses[request_id] = TokenResponse(request_id=request_id, url=url)
        except Exception as exc:
            logger.debug("Error recording token request: %s", exc)

    async def _on_response(self, event: network.ResponseReceived) -> None:
        request_id = str(event.request_id)
        entry = self.responses.get(request_id)
        if entry is None:
            return
        try:
            entry.status = int(event.response.status)
        except (TypeError, ValueError):
            entry.status = None

    async def _on_loading_finished(self, event: network.LoadingFinished) -> None:
        """Fetch the body once the response has fully loaded."""
        request_id = str(event.request_id)
        entry = self.responses.get(request_id)
        if entry is None or entry.accepted:
            return
        if entry.status is None or not 200 <= entry.status < 300:
            return

        try:
            encoded_len = float(getattr(event, "encoded_data_length", 0.0) or 0.0)
        except (TypeError, ValueError):
            encoded_len = 0.0
        if encoded_len and encoded_len > float(self.max_body_chars) * 4.0:
            return

        try:
            body_result = await self.page.send(network.get_response_body(event.request_id))
        except Exception:
            # Body isn't available for all requests (cached or already evicted).
            return
        body = _response_body_text(body_result)
        if body is None or len(body) > self.max_body_chars:
            return

        self.ingest(entry, body)

    async def _on_loading_failed(self, event: network.LoadingFailed) -> None:
        self.responses.pop(str(event.request_id), None)

    def ingest(self, entry: TokenResponse, body: str) -> str | None:
        """Parse a token response body and keep its token.

        Returns the scope name the token was mapped to, or None when the
        body is not a usable token response.
        """
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(payload, dict):
            return None

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            return None

        claim = payload.get("scope") or payload.get("resource") or ""
        if not isinstance(claim, str):
            return None
        scope = match_scope(claim, self.scopes)
        if scope is None:
            return None

        entry.scope = scope.name
        entry.accepted = True
        self._tokens[scope.name] = access_token

        expires_in = _as_int(payload.get("expires_in"))
        if expires_in is not None:
            entry.expires_in = expires_in
            self._expires_in[scope.name] = expires_in

        logger.debug("Captured %s token from %s", scope.name, entry.url)
        return scope.name

    def snapshot(self) -> dict[str, str]:
        """Tokens captured so far, by scope name."""
        return dict(self._tokens)

    def expiry_hint(self, emitted: Mapping[str, str] | None = None) -> int | None:
        """Shortest ``expires_in`` across captured tokens, in seconds.

        With ``emitted``, only scopes whose emitted token is the one this
        capture saw count. The value is relative to when each response
        arrived, not to when it is reported.
        """
        seen = {
            name: expires_in
            for name, expires_in in self._expires_in.items()
            if emitted is None or emitted.get(name) == self._tokens.get(name)
        }
        if not seen:
            return None
        return min(seen.values())

    def clear(self) -> None:
        self.responses.clear()
        self._tokens.clear()
        self._expires_in.clear()


def _response_body_text(body_result: Any) -> str | None:
    """Normalize nodriver's ``get_response_body`` result to text.

    nodriver CDP wrappers have changed return types across versions:
    - tuple[str, bool] (current): (body, base64Encoded)
    - dict/object with {"body": ..., "base64Encoded": ...} (older)
    Base64 bodies are binary payloads and never token JSON.
    """
    if not body_result:
        return None
    if isinstance(body_result, tuple) and len(body_result) == 2:
        body = body_result[0] if isinstance(body_result[0], str) else None
        base64_encoded = bool(body_result[1])
    elif isinstance(body_result, dict):
        body = body_result.get("body")
        base64_encoded = bool(
            body_result.get("base64Encoded", body_result.get("base64_encoded", False))
        )
    else:
        body = getattr(body_result, "body", None)
        base64_encoded = bool(
            getattr(body_result, "base64_encoded", getattr(body_result, "base64Encoded", False))
        )

    if base64_encoded or not isinstance(body, str):
        return None
    return body


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None
