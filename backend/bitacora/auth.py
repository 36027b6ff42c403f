import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Protocol

from .errors import AccessDeniedError, NotAuthenticatedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentUser:
    id: str


class AuthProvider(Protocol):
    def current_user(self) -> CurrentUser | None:
        ...


class StaticAuthProvider:
    """Caller identity fixed at construction (one request, one CLI invocation)."""

    def __init__(self, user_id: str | None) -> None:
        self.user_id = user_id

    def current_user(self) -> CurrentUser | None:
        if not self.user_id:
            return None
        return CurrentUser(id=self.user_id)


TOKEN_SCHEME = "hmac-sha256"


def _token_digest(token: str, key: bytes) -> str:
    return hmac.new(key, token.encode("utf-8"), hashlib.sha256).hexdigest()


def hash_token(token: str) -> str:
    """Stored form of an API token: ``hmac-sha256$<hex key>$<hex digest>``."""
    key = secrets.token_bytes(16)
    return f"{TOKEN_SCHEME}${key.hex()}${_token_digest(token, key)}"


def verify_token(token: str, stored_hash: str) -> bool:
    scheme, _, rest = stored_hash.partition("$")
    key_hex, _, expected = rest.partition("$")
    if scheme != TOKEN_SCHEME or not expected:
        return False
    try:
        key = bytes.fromhex(key_hex)
    except ValueError:
        return False
    return hmac.compare_digest(_token_digest(token, key), expected)


def new_api_token() -> str:
    return secrets.token_urlsafe(32)


class TokenRegistry:
    def __init__(self, token_hashes: dict[str, str]) -> None:
        self.token_hashes = dict(token_hashes)

    def authenticate(self, token: str | None) -> CurrentUser | None:
        if not token:
            return None
        for user_id, stored_hash in self.token_hashes.items():
            if verify_token(token, stored_hash):
                return CurrentUser(id=user_id)
        logger.info("rejected bearer token")
        return None


def validate_user_access(auth: AuthProvider, owner_id: str) -> CurrentUser:
    user = auth.current_user()
    if user is None:
        raise NotAuthenticatedError("no authenticated user")
    if user.id != owner_id:
        raise AccessDeniedError(f"user {user.id} cannot access records of {owner_id}")
    return user
