from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import AsyncGenerator

from ..core.config import settings
from ..core.database import get_db, get_redis
from ..core.security import security, verify_token, AuthenticationError, TokenPayload
from ..core.session import IdentitySession
from ..models.user import User
from ..schemas.user import Principal
from ..services.appointment_repository import AppointmentRepository
from ..services.directory import DirectoryLookup, UserDirectory
from ..services.lifecycle import AppointmentLifecycleEngine
from ..services.scheduling import SchedulingForm
from ..services.storage import ObjectStore, create_object_store

async def get_current_user_token(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """Extract and verify JWT token from Authorization header."""
    token_payload = verify_token(credentials.credentials)
    if not token_payload:
        raise AuthenticationError("Invalid or expired token")

    # Check if token is access token
    if token_payload.token_type != "access":
        raise AuthenticationError("Invalid token type")

    return token_payload

async def get_current_user(
    token_payload: TokenPayload = Depends(get_current_user_token),
    db: Session = Depends(get_db)
) -> User:
    """Get current authenticated user from database."""
    if not token_payload.sub:
        raise AuthenticationError("Invalid token payload")

    user = db.query(User).filter(User.id == token_payload.sub).first()
    if not user:
        raise AuthenticationError("User not found")

    if not user.is_active:
        raise AuthenticationError("User account is deactivated")

    return user

async def get_identity_session(
    current_user: User = Depends(get_current_user)
) -> AsyncGenerator[IdentitySession, None]:
    """Session for the authenticated caller, signed out when the request ends."""
    session = IdentitySession.for_principal(
        Principal(id=current_user.id, display_name=current_user.username)
    )
    try:
        yield session
    finally:
        session.sign_out()

def get_appointment_repository(db: Session = Depends(get_db)) -> AppointmentRepository:
    return AppointmentRepository(db)

def get_directory_lookup(
    db: Session = Depends(get_db),
    redis_client = Depends(get_redis)
) -> DirectoryLookup:
    return DirectoryLookup(db, redis_client)

def get_user_directory(db: Session = Depends(get_db)) -> UserDirectory:
    return UserDirectory(db)

def get_object_store() -> ObjectStore:
    return create_object_store()

async def get_lifecycle_engine(
    session: IdentitySession = Depends(get_identity_session),
    repository: AppointmentRepository = Depends(get_appointment_repository),
    lookup: DirectoryLookup = Depends(get_directory_lookup)
) -> AsyncGenerator[AppointmentLifecycleEngine, None]:
    engine = AppointmentLifecycleEngine(session, repository, lookup)
    try:
        yield engine
    finally:
        engine.close()

def get_scheduling_form(
    session: IdentitySession = Depends(get_identity_session),
    repository: AppointmentRepository = Depends(get_appointment_repository),
    directory: UserDirectory = Depends(get_user_directory),
    object_store: ObjectStore = Depends(get_object_store)
) -> SchedulingForm:
    return SchedulingForm(session, repository, directory, object_store)

# Rate limiting dependency
async def rate_limit_check(
    request: Request,
    redis_client = Depends(get_redis)
) -> None:
    """Basic rate limiting for authentication endpoints."""
    client_ip = request.client.host if request.client else "unknown"
    key = f"rate_limit:{client_ip}"

    current_requests = redis_client.get(key)
    if current_requests is None:
        redis_client.setex(key, settings.RATE_LIMIT_WINDOW_SECONDS, 1)
    else:
        if int(current_requests) >= settings.RATE_LIMIT_MAX_REQUESTS:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later."
            )
        redis_client.incr(key)
