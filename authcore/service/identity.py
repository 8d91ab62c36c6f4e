from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from google.auth import exceptions as google_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token

from authcore.logging import get_logger
from authcore.service.errors import InvalidAssertionError, UpstreamUnavailableError

logger = get_logger(__name__)

GOOGLE_ISSUERS = frozenset({"accounts.google.com", "https://accounts.google.com"})


@dataclass(frozen=True)
class IdentityClaims:
    subject: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None


class GoogleIdentityVerifier:
    """Validate Google ID tokens (signature, audience, issuer, email_verified).

    Google's key fetch is blocking, so verification runs in a worker thread
    bounded by ``timeout_seconds``.
    """

    def __init__(
        self,
        client_id: Optional[str],
        *,
        timeout_seconds: float = 10.0,
        verify_fn: Callable[..., Dict[str, Any]] = google_id_token.verify_oauth2_token,
    ) -> None:
        self.client_id = client_id
        self.timeout_seconds = timeout_seconds
        self._verify_fn = verify_fn

    def _verify_sync(self, credential: str) -> Dict[str, Any]:
        request_adapter = google_requests.Request()
        return self._verify_fn(credential, request_adapter, self.client_id)

    async def verify(self, credential: str) -> IdentityClaims:
        if not self.client_id:
            logger.error("google_client_id_missing")
            raise UpstreamUnavailableError("Google sign-in is not configured")
        if not credential:
            raise InvalidAssertionError()
        try:
            claims = await asyncio.wait_for(
                asyncio.to_thread(self._verify_sync, credential),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("google_verify_timeout", timeout=self.timeout_seconds)
            raise UpstreamUnavailableError() from exc
        except google_exceptions.TransportError as exc:
            logger.warning("google_verify_transport_error", error=str(exc))
            raise UpstreamUnavailableError() from exc
        except (ValueError, google_exceptions.GoogleAuthError) as exc:
            logger.info("google_assertion_rejected", error=str(exc))
            raise InvalidAssertionError() from exc

        issuer = str(claims.get("iss", ""))
        if issuer not in GOOGLE_ISSUERS:
            logger.info("google_assertion_rejected", error="invalid_issuer")
            raise InvalidAssertionError()
        subject = claims.get("sub")
        email = claims.get("email")
        if not subject or not email:
            raise InvalidAssertionError()
        if claims.get("email_verified") is False:
            logger.info("google_assertion_rejected", error="email_not_verified")
            raise InvalidAssertionError()
        return IdentityClaims(
            subject=str(subject),
            email=str(email),
            name=claims.get("name"),
            picture=claims.get("picture"),
        )
