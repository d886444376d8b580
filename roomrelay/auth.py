"""Connection admission and HTTP security middleware for the relay."""

from __future__ import annotations

import hmac
import logging
from collections.abc import Iterable
from typing import Any, cast

from aiohttp import web

from .constants import R_UNAUTHORIZED

logger = logging.getLogger(__name__)

BEARER_PREFIX = "bearer "


class Unauthorized(Exception):
    """Raised when a connection presents no valid invite token."""

    reason = R_UNAUTHORIZED

    def __init__(self, detail: str = R_UNAUTHORIZED):
        super().__init__(detail)


class AdmissionGate:
    """Admits or rejects connections by invite token.

    An empty token set means open mode: every connection is admitted.
    """

    def __init__(self, tokens: Iterable[str] = ()):
        """Initialize the gate.

        Args:
            tokens: Valid invite tokens; blanks are ignored
        """
        self._tokens: tuple[bytes, ...] = tuple(
            t.strip().encode() for t in tokens if isinstance(t, str) and t.strip()
        )

    @property
    def open_mode(self) -> bool:
        return not self._tokens

    @property
    def token_count(self) -> int:
        return len(self._tokens)

    def verify_token(self, token: str | None) -> bool:
        """Verify a token using constant-time comparison.

        Args:
            token: Presented token, possibly absent

        Returns:
            True if the connection may be admitted
        """
        if self.open_mode:
            return True
        if not token or not isinstance(token, str):
            return False

        presented = token.encode()
        matched = False
        for candidate in self._tokens:
            # Compare against every token so timing does not reveal the index.
            matched |= hmac.compare_digest(presented, candidate)
        return matched

    def admit(self, token: str | None) -> None:
        """Admit a connection or raise.

        Raises:
            Unauthorized: If the token is absent or unknown while tokens are configured
        """
        if not self.verify_token(token):
            raise Unauthorized()


def extract_token(request: web.Request) -> str | None:
    """Read the invite token from the upgrade request.

    Looks at the ``token`` query parameter first, then an
    ``Authorization: Bearer`` header.
    """
    token = request.query.get("token")
    if token:
        return token

    header = request.headers.get("Authorization", "")
    if header.lower().startswith(BEARER_PREFIX):
        return header[len(BEARER_PREFIX) :].strip() or None

    return None


@web.middleware
async def security_headers_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    """Middleware to add security headers.

    Args:
        request: HTTP request
        handler: Request handler

    Returns:
        HTTP response with security headers
    """
    response = await handler(request)

    if not response.prepared:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

    return cast(web.StreamResponse, response)
