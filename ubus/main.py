import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ubus.assignment import AssignmentCoordinator
from ubus.config import Settings, configure_logging, get_settings
from ubus.identity import IdentityProvider
from ubus.models import USERS, Role, User
from ubus.routers import admin, auth, driver, student, tracking
from ubus.session import SessionManager
from ubus.store import DirectoryStore

logger = logging.getLogger(__name__)


class AppState:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.store = DirectoryStore(settings.data_dir)
        self.identity = IdentityProvider(settings, settings.data_dir)
        self.sessions = SessionManager(self.store, self.identity, settings)
        self.assignments = AssignmentCoordinator(self.store)


# Admin accounts are provisioned here, never through signup
async def ensure_admin_user(db: AppState) -> User:
    settings = db.settings
    identity = db.identity.provision(settings.admin_email, settings.admin_password)
    doc = await db.store.get(USERS, identity.uid)
    if doc is not None:
        return User.from_doc(doc)

    admin_user = User(
        uid=identity.uid,
        email=identity.email,
        role=Role.ADMIN,
        name=settings.admin_name,
        college_id="ADMIN",
    )
    await db.store.create(USERS, admin_user.to_doc(), doc_id=identity.uid)
    logger.info("Provisioned admin account %s", identity.email)
    return admin_user


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.db = AppState(settings)
        await ensure_admin_user(app.state.db)
        yield
        # Sign everyone out so no timer or subscription outlives the process
        await app.state.db.sessions.close()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth.router, prefix="/auth")
    app.include_router(student.router, prefix="/students")
    app.include_router(driver.router, prefix="/driver")
    app.include_router(admin.router, prefix="/admin")
    app.include_router(tracking.router, prefix="/tracking")

    @app.get("/", tags=["Root"])
    async def read_root():
        return {"message": "Welcome to the College Bus Tracking API"}

    return app


app = create_app()
