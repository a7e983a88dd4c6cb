"""
Session manager.

Listens to the identity provider's sign-in/sign-out events. A sign-in only
becomes a session once the matching user record is found in the directory;
without one the identity is signed out again straight away.

A ``Session`` owns every live resource opened on behalf of its user (the
primary role view, any extra views opened by WebSocket clients, and the
driver's location publisher) in one ``ResourceScope``. Signing out closes
that scope, so no subscription, timer or in-flight write outlives the session.
A session also ends when its token expires or stops verifying.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ubus.config import Settings
from ubus.errors import (
    DirectoryConsistencyError,
    IdentityError,
    InvalidTokenError,
    SignUpDisabledError,
    StoreError,
)
from ubus.geolocation import DeviceGeolocation, GeolocationSource, SimulatedGeolocation
from ubus.identity import AuthEvent, Identity, IdentityProvider
from ubus.models import USERS, Role, User
from ubus.publisher import LocationPublisher
from ubus.scope import ResourceScope
from ubus.store import DirectoryStore
from ubus.views import LiveViewType, open_view

logger = logging.getLogger(__name__)


class SignupProfile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str
    password: str
    role: Role
    name: str
    college_id: str = Field(..., alias="collegeId")
    route_number: Optional[str] = Field(None, alias="routeNumber")


class Session:
    def __init__(self, identity: Identity, user: User, store: DirectoryStore, settings: Settings):
        self.identity = identity
        self.token = identity.token
        self.user = user
        self.store = store
        self.scope = ResourceScope(f"session {user.uid}")
        self.geolocation: Optional[GeolocationSource] = None
        self.publisher: Optional[LocationPublisher] = None

        if user.role is Role.DRIVER:
            if settings.simulate_location:
                self.geolocation = SimulatedGeolocation(
                    settings.default_center_lat,
                    settings.default_center_lng,
                    last_known=lambda: self.publisher.last_known_location or self.view.last_known_location,
                )
            else:
                self.geolocation = DeviceGeolocation()
            self.publisher = LocationPublisher(
                store,
                self.geolocation,
                bus_lookup=lambda: self.view.bus_id,
                interval=settings.effective_publish_interval,
                timeout_ms=settings.geolocation_timeout_ms,
                name=user.uid,
            )
            self.scope.add(self.publisher)

        self.view = self.open_view()

    @property
    def closed(self) -> bool:
        return self.scope.closed

    @property
    def device(self) -> Optional[DeviceGeolocation]:
        return self.geolocation if isinstance(self.geolocation, DeviceGeolocation) else None

    def open_view(self) -> LiveViewType:
        view = open_view(self.store, self.user, self.publisher)
        self.scope.add(view)
        return view

    def close_view(self, view: LiveViewType) -> None:
        view.close()
        self.scope.discard(view)

    def close(self) -> None:
        self.scope.close()


class SessionManager:
    def __init__(self, store: DirectoryStore, identity: IdentityProvider, settings: Settings):
        self.store = store
        self.identity = identity
        self.settings = settings
        self._sessions: Dict[str, Session] = {}
        self._sign_outs: Set[asyncio.Task] = set()
        self._auth_handle = identity.on_auth_state_change(self._on_auth_state_change)

    def __len__(self):
        return len(self._sessions)

    async def _on_auth_state_change(self, event: AuthEvent) -> None:
        identity = event.identity
        if not event.signed_in:
            session = self._sessions.pop(identity.token, None)
            if session is not None:
                session.close()
                logger.info("Session closed for %s", identity.email)
            return

        doc = await self.store.get(USERS, identity.uid)
        try:
            user = User.from_doc(doc) if doc is not None else None
        except ValidationError:
            logger.error("User record for %s is malformed", identity.uid, exc_info=True)
            user = None
        if user is None:
            logger.error("No user data found for %s; signing out", identity.email)
            await self.identity.sign_out(identity.token)
            return

        session = Session(identity, user, self.store, self.settings)
        self._sessions[identity.token] = session
        if identity.expires_at is not None:
            delay = (identity.expires_at - datetime.now(timezone.utc)).total_seconds()
            session.scope.add(asyncio.get_running_loop().call_later(max(delay, 0.0), self._expire, identity.token))
        logger.info("Session opened for %s (%s)", identity.email, user.role.value)

    def _expire(self, token: str) -> None:
        """Close the session for a token that no longer verifies, then sign the token out."""
        session = self._sessions.pop(token, None)
        if session is None:
            return
        session.close()
        logger.info("Session expired for %s", session.identity.email)
        task = asyncio.get_running_loop().create_task(self.identity.sign_out(token))
        self._sign_outs.add(task)
        task.add_done_callback(self._sign_outs.discard)

    async def login(self, email: str, password: str) -> Session:
        identity = await self.identity.sign_in(email, password)
        session = self._sessions.get(identity.token)
        if session is None:
            raise DirectoryConsistencyError()
        return session

    async def signup(self, profile: SignupProfile) -> Session:
        if profile.role is Role.ADMIN:
            raise SignUpDisabledError()
        if profile.role is Role.STUDENT and not (profile.route_number or "").strip():
            raise IdentityError("Route number is required for students.")

        identity = await self.identity.sign_up(profile.email, profile.password)
        user = User(
            uid=identity.uid,
            email=identity.email,
            role=profile.role,
            name=profile.name,
            college_id=profile.college_id,
            route_number=profile.route_number.strip() if profile.role is Role.STUDENT else None,
        )
        try:
            await self.store.create(USERS, user.to_doc(), doc_id=identity.uid)
        except StoreError:
            logger.error("Could not save the profile for %s", identity.email, exc_info=True)
            raise
        return await self.login(profile.email, profile.password)

    async def logout(self, token: str) -> None:
        await self.identity.sign_out(token)

    def get(self, token: str) -> Session:
        try:
            self.identity.verify(token)
        except InvalidTokenError:
            self._expire(token)
            raise
        session = self._sessions.get(token)
        if session is None:
            raise InvalidTokenError()
        return session

    def current_user(self, token: str) -> Optional[User]:
        try:
            return self.get(token).user
        except InvalidTokenError:
            return None

    async def close(self) -> None:
        for token in list(self._sessions):
            await self.identity.sign_out(token)
        self._auth_handle.cancel()
