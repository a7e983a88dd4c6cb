"""Identity provider: email/password accounts, bearer tokens and auth state events."""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, TypeAdapter, ValidationError

from ubus.config import Settings
from ubus.errors import (
    EmailAlreadyInUseError,
    InvalidCredentialsError,
    InvalidEmailError,
    InvalidTokenError,
    WeakPasswordError,
)
from ubus.scope import Subscription
from ubus.utils import data_manager

logger = logging.getLogger(__name__)

ACCOUNTS_FILE = "accounts"
MIN_PASSWORD_LENGTH = 6

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
_email_adapter = TypeAdapter(EmailStr)


class Identity(BaseModel):
    uid: str
    email: str
    token: Optional[str] = None
    expires_at: Optional[datetime] = None


class AuthEvent(BaseModel):
    identity: Identity
    signed_in: bool


AuthListener = Callable[[AuthEvent], Awaitable[None]]


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def normalize_email(email: str) -> str:
    try:
        return _email_adapter.validate_python(email.strip()).lower()
    except ValidationError:
        raise InvalidEmailError()


class IdentityProvider:
    def __init__(self, settings: Settings, data_dir: Optional[Path] = None):
        self.settings = settings
        self.data_dir = Path(data_dir) if data_dir is not None else None
        accounts = data_manager.load_data(ACCOUNTS_FILE, self.data_dir) if self.data_dir is not None else []
        self._accounts: Dict[str, dict] = {account["email"]: account for account in accounts}
        self._live_tokens: Dict[str, Identity] = {}
        self._listeners: List[AuthListener] = []

    def create_access_token(self, data: dict, expires_delta: Optional[timedelta] = None):
        to_encode = data.copy()
        if expires_delta is None:
            expires_delta = timedelta(minutes=15)
        expire = datetime.now(timezone.utc) + expires_delta
        to_encode.update({"exp": expire, "jti": uuid.uuid4().hex})
        return jwt.encode(to_encode, self.settings.secret_key, algorithm=self.settings.algorithm)

    def on_auth_state_change(self, callback: AuthListener) -> Subscription:
        """Register ``callback`` for every sign-in and sign-out transition."""
        self._listeners.append(callback)

        def _remove():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return Subscription(_remove, name="auth-state")

    async def sign_up(self, email: str, password: str) -> Identity:
        """Create an account. The new account is not signed in."""
        email = normalize_email(email)
        if len(password) < MIN_PASSWORD_LENGTH:
            raise WeakPasswordError()
        if email in self._accounts:
            raise EmailAlreadyInUseError()
        account = self._create_account(email, password)
        logger.info("Account created for %s (%s)", email, account["uid"])
        return Identity(uid=account["uid"], email=email)

    def provision(self, email: str, password: str) -> Identity:
        """Out-of-band account creation; an existing account is left as it is."""
        email = normalize_email(email)
        account = self._accounts.get(email) or self._create_account(email, password)
        return Identity(uid=account["uid"], email=email)

    async def sign_in(self, email: str, password: str) -> Identity:
        try:
            email = normalize_email(email)
        except InvalidEmailError:
            raise InvalidCredentialsError()
        account = self._accounts.get(email)
        if not account or not verify_password(password, account["passwordHash"]):
            raise InvalidCredentialsError()

        token = self.create_access_token(
            data={"sub": account["uid"], "email": email},
            expires_delta=timedelta(minutes=self.settings.access_token_expire_minutes),
        )
        expires_at = datetime.fromtimestamp(jwt.get_unverified_claims(token)["exp"], tz=timezone.utc)
        identity = Identity(uid=account["uid"], email=email, token=token, expires_at=expires_at)
        self._live_tokens[token] = identity
        await self._emit(AuthEvent(identity=identity, signed_in=True))
        return identity

    async def sign_out(self, token: str) -> None:
        identity = self._live_tokens.pop(token, None)
        if identity is None:
            return
        await self._emit(AuthEvent(identity=identity, signed_in=False))

    def verify(self, token: str) -> Identity:
        try:
            payload = jwt.decode(token, self.settings.secret_key, algorithms=[self.settings.algorithm])
        except JWTError:
            raise InvalidTokenError()
        identity = self._live_tokens.get(token)
        if identity is None or payload.get("sub") != identity.uid:
            raise InvalidTokenError()
        return identity

    def _create_account(self, email: str, password: str) -> dict:
        account = {"uid": uuid.uuid4().hex, "email": email, "passwordHash": get_password_hash(password)}
        self._accounts[email] = account
        if self.data_dir is not None:
            data_manager.save_data(ACCOUNTS_FILE, list(self._accounts.values()), self.data_dir)
        return account

    async def _emit(self, event: AuthEvent) -> None:
        for listener in list(self._listeners):
            await listener(event)
