"""Identity verifier: password hashing and bearer token issuance/verification."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
import secrets
from dataclasses import dataclass

from .errors import InvalidCredential, InvalidRequest, PhoneTaken
from .models import User, _now_ms
from .sqlite_backend import SQLiteBackend
from .store import Store

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 120_000
DEFAULT_TOKEN_TTL_MS = 30 * 24 * 60 * 60 * 1000

_PHONE_RE = re.compile(r"^[0-9]{10,11}$")


def validate_phone(phone: object) -> str:
    if not isinstance(phone, str) or not _PHONE_RE.match(phone):
        raise InvalidRequest("phone must be 10-11 digits")
    return phone


def validate_password(password: object) -> str:
    if not isinstance(password, str) or len(password) < 6:
        raise InvalidRequest("password must be at least 6 characters")
    return password


def validate_name(name: object) -> str:
    if not isinstance(name, str) or len(name.strip()) < 2:
        raise InvalidRequest("name must be at least 2 characters")
    return name.strip()


def hash_password(password: str, *, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    salt_b64 = base64.b64encode(salt).decode("ascii")
    digest_b64 = base64.b64encode(digest).decode("ascii")
    return f"pbkdf2_sha256${iterations}${salt_b64}${digest_b64}"


def check_password(password: str, encoded: str) -> bool:
    try:
        algorithm, iterations, salt_b64, digest_b64 = encoded.split("$")
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    salt = base64.b64decode(salt_b64)
    expected = base64.b64decode(digest_b64)
    candidate = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, int(iterations))
    return hmac.compare_digest(candidate, expected)


@dataclass
class IssuedToken:
    token: str
    user_id: int
    expires_at_ms: int


class TokenStore:
    """In-memory token table with expiry."""

    def __init__(self) -> None:
        self._tokens: dict[str, IssuedToken] = {}

    def save(self, issued: IssuedToken) -> None:
        self._tokens[issued.token] = issued

    def get(self, token: str) -> IssuedToken | None:
        issued = self._tokens.get(token)
        if issued is None:
            return None
        if issued.expires_at_ms <= _now_ms():
            self.revoke(token)
            return None
        return issued

    def revoke(self, token: str) -> None:
        self._tokens.pop(token, None)


class SQLiteTokenStore:
    """Durable token table backed by SQLite."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def save(self, issued: IssuedToken) -> None:
        with self._backend.lock:
            self._backend.connection.execute(
                "INSERT INTO sessions (token, user_id, expires_at_ms) VALUES (?, ?, ?)",
                (issued.token, issued.user_id, issued.expires_at_ms),
            )

    def get(self, token: str) -> IssuedToken | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT token, user_id, expires_at_ms FROM sessions WHERE token=?",
                (token,),
            ).fetchone()
        if row is None:
            return None
        issued = IssuedToken(token=row[0], user_id=row[1], expires_at_ms=row[2])
        if issued.expires_at_ms <= _now_ms():
            self.revoke(token)
            return None
        return issued

    def revoke(self, token: str) -> None:
        with self._backend.lock:
            self._backend.connection.execute("DELETE FROM sessions WHERE token=?", (token,))


class CredentialService:
    """Registers users, checks passwords, and issues/verifies bearer tokens.

    Password hashes never leave this class; callers only see :class:`User`.
    """

    def __init__(self, store: Store, tokens, *, token_ttl_ms: int = DEFAULT_TOKEN_TTL_MS) -> None:
        self._store = store
        self._tokens = tokens
        self._token_ttl_ms = token_ttl_ms

    def register(self, name: object, phone: object, password: object) -> User:
        clean_name = validate_name(name)
        clean_phone = validate_phone(phone)
        clean_password = validate_password(password)
        if self._store.find_user_by_phone(clean_phone) is not None:
            raise PhoneTaken()
        user = self._store.create_user(clean_name, clean_phone, hash_password(clean_password))
        logger.info("registered user %s", user.id)
        return user

    def login(self, phone: object, password: object) -> tuple[str, User]:
        if not isinstance(phone, str) or not isinstance(password, str) or not phone or not password:
            raise InvalidRequest("phone and password required")
        ref = self._store.credential_ref(phone)
        if ref is None or not check_password(password, ref[1]):
            logger.info("login rejected for phone ending %s", phone[-2:])
            raise InvalidCredential("invalid phone or password")
        user = ref[0]
        return self.issue(user), user

    def issue(self, user: User) -> str:
        issued = IssuedToken(
            token=f"st_{secrets.token_urlsafe(24)}",
            user_id=user.id,
            expires_at_ms=_now_ms() + self._token_ttl_ms,
        )
        self._tokens.save(issued)
        return issued.token

    def verify(self, credential: object) -> User:
        if not isinstance(credential, str) or not credential:
            raise InvalidCredential("credential required")
        issued = self._tokens.get(credential)
        if issued is None:
            raise InvalidCredential()
        user = self._store.get_user(issued.user_id)
        if user is None:
            self._tokens.revoke(credential)
            raise InvalidCredential("user no longer exists")
        return user

    def revoke(self, credential: str) -> None:
        self._tokens.revoke(credential)
