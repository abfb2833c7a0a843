"""
Connection Credential

The realtime endpoints take a JWT bearer token as a query parameter.
Claims are decoded client-side without signature verification, only to
refuse a connection attempt early when the token cannot succeed.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import jwt

from erp_prime.core.exceptions import (
    ExpiredCredentialError,
    InvalidCredentialError,
    MissingCredentialError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    """Bearer token plus its decoded (unverified) claims."""

    token: str = field(repr=False)
    claims: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def parse(cls, token: Optional[str], now: Optional[float] = None) -> "Credential":
        """
        Decode and check a token.

        Args:
            token: Raw JWT, or None when no token is available
            now: Current unix time (defaults to time.time())

        Raises:
            MissingCredentialError: token absent or empty
            InvalidCredentialError: not a JWT, or an ``exp`` that is not a
                representable timestamp
            ExpiredCredentialError: ``exp`` is in the past
        """
        if not token:
            raise MissingCredentialError("Authentication token not found")

        try:
            claims = jwt.decode(
                token,
                options={"verify_signature": False, "verify_exp": False},
            )
        except jwt.PyJWTError as exc:
            raise InvalidCredentialError("Invalid token", cause=exc) from exc

        exp = claims.get("exp")
        if exp is not None:
            _check_exp(exp)

        credential = cls(token=token, claims=claims)
        credential.ensure_valid(now)
        return credential

    @property
    def expiry(self) -> Optional[int]:
        """Raw ``exp`` claim in unix seconds."""
        exp = self.claims.get("exp")
        return int(exp) if exp is not None else None

    @property
    def expires_at(self) -> Optional[datetime]:
        """Expiry as an aware UTC datetime, None when absent or unrepresentable."""
        if self.expiry is None:
            return None
        try:
            return datetime.fromtimestamp(self.expiry, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    def is_expired(self, now: Optional[float] = None) -> bool:
        """A token without ``exp`` never expires client-side."""
        if self.expiry is None:
            return False
        current = int(now if now is not None else time.time())
        return self.expiry < current

    def ensure_valid(self, now: Optional[float] = None) -> None:
        """Raise ExpiredCredentialError if the token expired."""
        if self.is_expired(now):
            logger.warning("[Credential] Token expired at %s", self.expires_at)
            raise ExpiredCredentialError("Token expired", expired_at=self.expiry)


def _check_exp(exp: Any) -> None:
    """Reject an ``exp`` claim that is not a finite, platform-representable timestamp."""
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        raise InvalidCredentialError(
            "Invalid token", details={"reason": "non-numeric exp claim"}
        )
    try:
        if not math.isfinite(exp):
            raise ValueError(f"non-finite exp claim: {exp}")
        datetime.fromtimestamp(exp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise InvalidCredentialError(
            "Invalid token",
            details={"reason": "exp claim out of range"},
            cause=exc,
        ) from exc
