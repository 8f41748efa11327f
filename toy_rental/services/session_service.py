from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from toy_rental.config import Settings
from toy_rental.models.rental_models import User, UserToken

ACCESS = "access"
REFRESH = "refresh"


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _utc_naive(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).replace(tzinfo=None)


def sign_token(payload: dict[str, Any], secret: str) -> str:
    body = json.dumps(payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = _b64encode(body)
    signature = hmac.new(secret.encode("utf-8"), encoded.encode("ascii"), hashlib.sha256).digest()
    return f"{encoded}.{_b64encode(signature)}"


def read_token(token: str | None, secret: str, now: float | None = None) -> dict[str, Any] | None:
    """Return the payload of a correctly signed, unexpired token, else None."""
    if not token:
        return None
    try:
        encoded, encoded_sig = token.split(".", 1)
        expected_sig = hmac.new(secret.encode("utf-8"), encoded.encode("ascii"), hashlib.sha256).digest()
        if not hmac.compare_digest(expected_sig, _b64decode(encoded_sig)):
            return None
        payload = json.loads(_b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    try:
        expires_at = float(payload.get("exp") or 0.0)
    except (TypeError, ValueError):
        return None
    if (now if now is not None else time.time()) >= expires_at:
        return None
    return payload


class SessionService:
    """Access/refresh token pairs backed by the ``user_tokens`` table.

    A token is valid while its signature checks out, it has not expired and
    its row still exists. Logout deletes the row.
    """

    def __init__(self, db: Session, settings: Settings, logger: logging.Logger | None = None):
        self.db = db
        self.settings = settings
        self.logger = logger or logging.getLogger("toy_rental.auth")

    def _token_pair(self, user: User) -> tuple[str, float, str, float]:
        now = time.time()
        access_exp = now + self.settings.access_token_exp_hours * 3600
        refresh_exp = now + self.settings.refresh_token_exp_days * 86400
        common = {"sub": str(user.id), "iss": self.settings.token_issuer}
        access = sign_token(
            {**common, "typ": ACCESS, "email": user.email, "role": user.role, "exp": access_exp, "jti": secrets.token_hex(8)},
            self.settings.session_secret,
        )
        refresh = sign_token(
            {**common, "typ": REFRESH, "exp": refresh_exp, "jti": secrets.token_hex(8)},
            self.settings.session_secret,
        )
        return access, access_exp, refresh, refresh_exp

    def issue(self, user: User) -> UserToken:
        access, access_exp, refresh, refresh_exp = self._token_pair(user)
        token = UserToken(
            user_id=user.id,
            access_token=access,
            refresh_token=refresh,
            access_token_expires_at=_utc_naive(access_exp),
            refresh_token_expires_at=_utc_naive(refresh_exp),
        )
        self.db.add(token)
        self.db.flush()
        return token

    def resolve(self, access_token: str | None) -> dict[str, Any] | None:
        claims = read_token(access_token, self.settings.session_secret)
        if not claims or claims.get("typ") != ACCESS or claims.get("iss") != self.settings.token_issuer:
            return None
        row = self.db.execute(select(UserToken.id).where(UserToken.access_token == access_token)).first()
        if row is None:
            return None
        return claims

    def refresh(self, refresh_token: str | None) -> UserToken | None:
        claims = read_token(refresh_token, self.settings.session_secret)
        if not claims or claims.get("typ") != REFRESH:
            return None
        token = self.db.execute(select(UserToken).where(UserToken.refresh_token == refresh_token)).scalars().first()
        if token is None or token.user is None or not token.user.is_active:
            return None
        access, access_exp, refresh, refresh_exp = self._token_pair(token.user)
        token.access_token = access
        token.refresh_token = refresh
        token.access_token_expires_at = _utc_naive(access_exp)
        token.refresh_token_expires_at = _utc_naive(refresh_exp)
        self.db.flush()
        self.logger.info("Token refreshed user_id=%s", token.user_id)
        return token

    def revoke(self, access_token: str | None) -> bool:
        if not access_token:
            return False
        result = self.db.execute(delete(UserToken).where(UserToken.access_token == access_token))
        return result.rowcount > 0
