from dataclasses import dataclass
from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from errors import Unauthorized


@dataclass(frozen=True)
class Owner:
    id: str
    email: Optional[str] = None


def _serializer(secret: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret, salt="owner-token")


def issue_owner_token(
    owner_id: str, secret: str, *, email: Optional[str] = None
) -> str:
    if not owner_id:
        raise ValueError("owner_id is required")
    claims = {"sub": owner_id}
    if email:
        claims["email"] = email
    return _serializer(secret).dumps(claims)


def resolve_identity(token: Optional[str], secret: str, max_age_secs: int) -> Owner:
    if not token:
        raise Unauthorized("Unauthorized")
    try:
        data = _serializer(secret).loads(token, max_age=max_age_secs)
    except SignatureExpired as exc:
        raise Unauthorized("Session expired") from exc
    except BadSignature as exc:
        raise Unauthorized("Unauthorized") from exc

    if not isinstance(data, dict) or not data.get("sub"):
        raise Unauthorized("Unauthorized")
    return Owner(id=data["sub"], email=data.get("email") or None)


def bearer_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
