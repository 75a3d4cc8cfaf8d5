from dataclasses import dataclass
from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from passlib.context import CryptContext

from config import get_settings

AUTH_COOKIE = "authToken"

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class TokenError(ValueError):
    pass


@dataclass(frozen=True)
class TokenClaims:
    user_id: int
    email: str


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="auth-token")


def token_max_age_secs() -> int:
    return get_settings().token_max_age_days * 24 * 3600


def create_access_token(user_id: int, email: str) -> str:
    return _serializer().dumps({"u": user_id, "e": email})


def decode_access_token(token: str, max_age: Optional[int] = None) -> TokenClaims:
    if not token or not token.strip():
        raise TokenError("Invalid token format")
    try:
        data = _serializer().loads(token, max_age=max_age or token_max_age_secs())
    except SignatureExpired as exc:
        raise TokenError("Token expired") from exc
    except BadSignature as exc:
        raise TokenError("Invalid token") from exc

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        raise TokenError("Invalid token")
    return TokenClaims(user_id=user_id, email=str(data.get("e", "")))
