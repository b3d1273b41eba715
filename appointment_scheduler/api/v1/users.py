from fastapi import APIRouter, Depends
from typing import List

from ...api.deps import get_identity_session, get_user_directory
from ...core.session import IdentitySession
from ...schemas.user import DirectoryEntry, Principal
from ...services.directory import UserDirectory

router = APIRouter(prefix="/users", tags=["Users"])

@router.get("", response_model=List[DirectoryEntry])
async def list_users(
    search: str = "",
    session: IdentitySession = Depends(get_identity_session),
    directory: UserDirectory = Depends(get_user_directory)
):
    """Everyone except the caller, optionally filtered by username."""
    return await directory.list_principals(session.principal.id, search)

@router.get("/{user_id}", response_model=Principal)
async def select_user(
    user_id: str,
    session: IdentitySession = Depends(get_identity_session),
    directory: UserDirectory = Depends(get_user_directory)
):
    """Pick a user to schedule an appointment with."""
    return await directory.select(session.principal.id, user_id)
