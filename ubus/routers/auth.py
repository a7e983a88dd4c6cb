from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel

from ubus.errors import (
    AssignmentError,
    DirectoryConsistencyError,
    DocumentNotFoundError,
    IdentityError,
    InvalidCredentialsError,
    InvalidTokenError,
    NoBusAssignedError,
    PublisherError,
    SignUpDisabledError,
    UBusError,
)
from ubus.models import Role, User
from ubus.session import Session, SessionManager, SignupProfile

router = APIRouter()

# OAuth2PasswordBearer for token extraction
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")

# Most specific first
STATUS_CODES = (
    (InvalidTokenError, status.HTTP_401_UNAUTHORIZED),
    (InvalidCredentialsError, status.HTTP_401_UNAUTHORIZED),
    (SignUpDisabledError, status.HTTP_403_FORBIDDEN),
    (IdentityError, status.HTTP_400_BAD_REQUEST),
    (DirectoryConsistencyError, status.HTTP_409_CONFLICT),
    (DocumentNotFoundError, status.HTTP_404_NOT_FOUND),
    (NoBusAssignedError, status.HTTP_409_CONFLICT),
    (PublisherError, status.HTTP_409_CONFLICT),
    (AssignmentError, status.HTTP_400_BAD_REQUEST),
)


def to_http_exception(exc: UBusError) -> HTTPException:
    for error_type, status_code in STATUS_CODES:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.message)
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message)


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    uid: str
    role: Role
    name: str


class LoginRequest(BaseModel):
    email: str
    password: str


def get_sessions(request: Request) -> SessionManager:
    return request.app.state.db.sessions


def _token_for(session: Session) -> Token:
    return Token(access_token=session.token, uid=session.user.uid, role=session.user.role, name=session.user.name)


# Dependency to get the caller's session from the bearer token
async def get_current_session(request: Request, token: str = Depends(oauth2_scheme)) -> Session:
    try:
        return get_sessions(request).get(token)
    except InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user(session: Session = Depends(get_current_session)) -> User:
    return session.user


def require_role(role: Role):
    async def _session_for_role(session: Session = Depends(get_current_session)) -> Session:
        if session.user.role is not role:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to access this resource")
        return session
    return _session_for_role


# Authentication endpoints
@router.post("/signup", response_model=Token, tags=["Authentication"])
async def signup(profile: SignupProfile, request: Request):
    try:
        session = await get_sessions(request).signup(profile)
    except UBusError as exc:
        raise to_http_exception(exc)
    return _token_for(session)


@router.post("/login", response_model=Token, tags=["Authentication"])
async def login(form_data: LoginRequest, request: Request):
    try:
        session = await get_sessions(request).login(form_data.email, form_data.password)
    except UBusError as exc:
        raise to_http_exception(exc)
    return _token_for(session)


# Form login for the interactive docs; the username field carries the email
@router.post("/token", response_model=Token, tags=["Authentication"])
async def login_for_access_token(request: Request, form_data: OAuth2PasswordRequestForm = Depends()):
    return await login(LoginRequest(email=form_data.username, password=form_data.password), request)


@router.post("/logout", tags=["Authentication"])
async def logout(request: Request, session: Session = Depends(get_current_session)):
    await get_sessions(request).logout(session.token)
    return {"message": "Logged out"}


@router.get("/me", response_model=User, response_model_by_alias=True, tags=["Authentication"])
async def read_current_user(current_user: User = Depends(get_current_user)):
    return current_user
