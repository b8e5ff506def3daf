"""
Account registry and sign-in sessions.

Accounts live in the key-value store under their email address with a salted
PBKDF2 password hash. Signing in issues an opaque token bound to the user's
identity; signing out forgets it. Tokens have no expiry.
"""

import asyncio
import hashlib
import hmac
import logging
import secrets

from .errors import AuthError, ValidationError
from .models import User, new_id
from .store import SESSIONS_KEY, USERS_KEY, KeyValueStore

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 200_000


def hash_password(password: str, salt: str | None = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), bytes.fromhex(salt), PBKDF2_ITERATIONS
    )
    return f"{salt}${digest.hex()}"


def verify_password(password: str, hashed: str) -> bool:
    salt, _, expected = hashed.partition("$")
    if not salt or not expected:
        return False
    candidate = hash_password(password, salt).partition("$")[2]
    return hmac.compare_digest(candidate, expected)


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class SessionStore:
    """Maps session tokens to the signed-in identity."""

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv

    def create(self, user: User) -> str:
        token = secrets.token_urlsafe(32)
        sessions = self._kv.get(SESSIONS_KEY, {})
        sessions[token] = user.model_dump()
        self._kv.set(SESSIONS_KEY, sessions)
        return token

    def get(self, token: str | None) -> User | None:
        if not token:
            return None
        payload = self._kv.get(SESSIONS_KEY, {}).get(token)
        if payload is None:
            return None
        return User.model_validate(payload)

    def clear(self, token: str) -> None:
        sessions = self._kv.get(SESSIONS_KEY, {})
        if sessions.pop(token, None) is not None:
            self._kv.set(SESSIONS_KEY, sessions)


class AccountStore:
    """
    Sign-up and sign-in against the stored account registry.

    Password hashing and registry access run in worker threads so a slow
    key derivation never stalls other requests.
    """

    def __init__(self, kv: KeyValueStore, sessions: SessionStore | None = None) -> None:
        self._kv = kv
        self.sessions = sessions or SessionStore(kv)
        self._lock = asyncio.Lock()

    async def sign_up(self, email: str, password: str, name: str) -> User:
        """
        Register a new account.

        Raises:
            ValidationError: If a field is empty
            AuthError: If the email is already registered
        """
        key = _normalize_email(email)
        name = (name or "").strip()
        if not key or not password or not name:
            raise ValidationError("Email, password and name are required")

        password_hash = await asyncio.to_thread(hash_password, password)
        async with self._lock:
            users = await asyncio.to_thread(self._kv.get, USERS_KEY, {})
            if key in users:
                raise AuthError("User already exists")
            user = User(id=new_id(), name=name, email=key)
            users[key] = {**user.model_dump(), "password_hash": password_hash}
            await asyncio.to_thread(self._kv.set, USERS_KEY, users)

        logger.info("Registered account %s", user.id)
        return user

    async def sign_in(self, email: str, password: str) -> tuple[str, User]:
        """
        Check credentials and open a session.

        Returns:
            The session token and the signed-in user

        Raises:
            AuthError: If the email is unknown or the password is wrong
        """
        users = await asyncio.to_thread(self._kv.get, USERS_KEY, {})
        record = users.get(_normalize_email(email))
        if record is None or not await asyncio.to_thread(
            verify_password, password or "", record["password_hash"]
        ):
            raise AuthError("Invalid email or password")

        user = User(id=record["id"], name=record["name"], email=record["email"])
        async with self._lock:
            token = await asyncio.to_thread(self.sessions.create, user)
        return token, user

    async def current_user(self, token: str | None) -> User | None:
        return await asyncio.to_thread(self.sessions.get, token)

    async def sign_out(self, token: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self.sessions.clear, token)
