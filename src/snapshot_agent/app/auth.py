"""HTTP Basic authentication backed by the shared database session.

Policy: the first credential that successfully opens the database session wins.
Its raw Authorization header becomes the agent's token, and every later request
must present a byte-identical header. Only one identity is current at a time.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
import threading
from collections.abc import Callable

from .database import ExclusiveSession
from .errors import DatabaseFailure, Unauthorized

logger = logging.getLogger(__name__)


def parse_basic_credentials(header: str | None) -> tuple[str, str]:
    """Decode ``Basic <base64(user:password)>`` into (user, password)."""
    if not header or not header.strip():
        raise Unauthorized("missing Authorization header")
    scheme, _, encoded = header.strip().partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        raise Unauthorized("Authorization header is not HTTP Basic")
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise Unauthorized("Authorization header is not valid base64") from exc
    user, sep, password = decoded.partition(":")
    if not sep or not user:
        raise Unauthorized("Authorization header lacks user:password")
    return user, password


class CredentialGate:
    """Validates callers against the credential that opened the database session."""

    def __init__(
        self,
        session: ExclusiveSession,
        on_established: Callable[[], object] | None = None,
    ) -> None:
        self._session = session
        # Runs once, right after the first login opens the session.
        self._on_established = on_established
        self._token: bytes | None = None
        self._lock = threading.Lock()

    @property
    def has_token(self) -> bool:
        return self._token is not None

    def authenticate(self, header: str | None) -> None:
        """Raise Unauthorized unless ``header`` matches the session credential."""
        user, password = parse_basic_credentials(header)
        presented = header.strip().encode("utf-8")  # type: ignore[union-attr]

        with self._lock:
            if not self._session.is_established:
                logger.info("auth event=establish_session user=%s", user)
                try:
                    self._session.establish(user, password)
                except DatabaseFailure as exc:
                    logger.error("auth event=failed user=%s reason=connect_failed", user)
                    raise Unauthorized("database rejected credentials") from exc
                self._token = presented
                if self._on_established is not None:
                    self._on_established()
            token = self._token

        if token is None or not hmac.compare_digest(token, presented):
            logger.error("auth event=failed user=%s reason=token_mismatch", user)
            raise Unauthorized("credential does not match the established session")
