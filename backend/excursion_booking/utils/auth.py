from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Sequence

import jwt
from jwt import InvalidTokenError

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    role: str | None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def create_access_token(
    *,
    subject: str,
    secret: str,
    role: str | None = ADMIN_ROLE,
    algorithm: str = "HS256",
    expires_delta: timedelta | None = None,
) -> str:
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=30))
    payload: dict[str, object] = {"sub": subject, "iat": now, "exp": exp}
    if role is not None:
        payload["role"] = role
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_access_token(
    token: str,
    *,
    secret: str,
    algorithms: Sequence[str],
) -> TokenClaims:
    try:
        payload = jwt.decode(token, secret, algorithms=list(algorithms))
    except InvalidTokenError as exc:  # includes ExpiredSignatureError
        raise ValueError("invalid token") from exc

    sub = payload.get("sub")
    if not sub:
        raise ValueError("token missing sub")
    role = payload.get("role")
    return TokenClaims(subject=str(sub), role=str(role) if role is not None else None)
