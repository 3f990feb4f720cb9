import secrets
import uuid
from dataclasses import dataclass

import bcrypt
from itsdangerous import BadSignature, URLSafeTimedSerializer

from errors import UnauthorizedError


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


@dataclass(frozen=True)
class TokenPayload:
    user_id: uuid.UUID
    email: str


class TokenSigner:
    """Issues and checks signed, time-limited bearer tokens.

    Access and refresh tokens use different salts, so one kind is never
    accepted in place of the other.
    """

    def __init__(self, secret: str, access_ttl_secs: int, refresh_ttl_secs: int) -> None:
        self.access_ttl_secs = access_ttl_secs
        self.refresh_ttl_secs = refresh_ttl_secs
        self._access = URLSafeTimedSerializer(secret, salt="access-token")
        self._refresh = URLSafeTimedSerializer(secret, salt="refresh-token")

    @staticmethod
    def _claims(user_id: uuid.UUID, email: str) -> dict[str, str]:
        return {"u": str(user_id), "e": email, "n": secrets.token_hex(8)}

    def sign_access_token(self, user_id: uuid.UUID, email: str) -> str:
        return self._access.dumps(self._claims(user_id, email))

    def sign_refresh_token(self, user_id: uuid.UUID, email: str) -> str:
        return self._refresh.dumps(self._claims(user_id, email))

    def verify_access_token(self, token: str) -> TokenPayload:
        return self._load(self._access, token, self.access_ttl_secs, "token")

    def verify_refresh_token(self, token: str) -> TokenPayload:
        return self._load(self._refresh, token, self.refresh_ttl_secs, "refresh token")

    @staticmethod
    def _load(
        serializer: URLSafeTimedSerializer, token: str, max_age: int, label: str
    ) -> TokenPayload:
        try:
            data = serializer.loads(token, max_age=max_age)
            return TokenPayload(user_id=uuid.UUID(data["u"]), email=data["e"])
        except (BadSignature, KeyError, TypeError, ValueError) as exc:
            raise UnauthorizedError(f"Invalid or expired {label}") from exc
