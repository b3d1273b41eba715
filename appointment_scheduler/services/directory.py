"""Principal directory - display names and counterparty selection"""
import logging
from typing import Dict, Iterable, List, Optional

import redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..core.config import settings
from ..core.errors import ReadError, ValidationError
from ..models.user import User
from ..schemas.user import DirectoryEntry, Principal

logger = logging.getLogger(__name__)

UNKNOWN_USER = "Unknown User"
UNKNOWN_SCHEDULER = "Unknown Scheduler"


def label_or_fallback(names: Dict[str, str], principal_id: str, fallback: str) -> str:
    name = names.get(principal_id)
    if name is None:
        logger.info(f"No display name for {principal_id}, labelled '{fallback}'")
        return fallback
    return name


class DirectoryLookup:
    """
    Resolve principal ids to display names.

    Names are memoized for the lifetime of the instance and cached in Redis
    across requests. Misses are never cached.
    """

    def __init__(self, db: Session, redis_client=None, cache_ttl: Optional[int] = None):
        self.db = db
        self.redis = redis_client
        self.cache_ttl = cache_ttl or settings.DISPLAY_NAME_CACHE_TTL
        self._memo: Dict[str, str] = {}

    async def resolve(self, principal_ids: Iterable[str]) -> Dict[str, str]:
        """
        Display names for every id that has a user record.

        Ids not yet memoized are looked up together, cache first and then one
        database query, on the threadpool. A failed query resolves nothing
        new and is logged; the caller decides the fallback per id.
        """
        ids = list(dict.fromkeys(principal_ids))
        wanted = [principal_id for principal_id in ids if principal_id not in self._memo]
        if wanted:
            try:
                await run_in_threadpool(self._load, wanted)
            except SQLAlchemyError as e:
                logger.warning(f"Display name lookup failed for {len(wanted)} ids: {e}")
        return {principal_id: self._memo[principal_id] for principal_id in ids if principal_id in self._memo}

    async def label(self, principal_id: str, fallback: str = UNKNOWN_USER) -> str:
        """Display name for the id, or the fallback when it cannot be resolved."""
        return label_or_fallback(await self.resolve([principal_id]), principal_id, fallback)

    def _load(self, principal_ids: List[str]):
        missing = []
        for principal_id in principal_ids:
            name = self._cache_get(principal_id)
            if name is None:
                missing.append(principal_id)
            else:
                self._memo[principal_id] = name
        if not missing:
            return

        rows = self.db.query(User.id, User.username).filter(User.id.in_(missing)).all()
        for user_id, username in rows:
            self._memo[user_id] = username
            self._cache_set(user_id, username)

    def _cache_key(self, principal_id: str) -> str:
        return f"display_name:{principal_id}"

    def _cache_get(self, principal_id: str) -> Optional[str]:
        if self.redis is None:
            return None
        try:
            return self.redis.get(self._cache_key(principal_id))
        except redis.RedisError as e:
            logger.debug(f"Display name cache unavailable: {e}")
            return None

    def _cache_set(self, principal_id: str, name: str):
        if self.redis is None:
            return
        try:
            self.redis.setex(self._cache_key(principal_id), self.cache_ttl, name)
        except redis.RedisError as e:
            logger.debug(f"Display name cache unavailable: {e}")


class UserDirectory:
    """Everyone the caller can schedule an appointment with."""

    def __init__(self, db: Session):
        self.db = db

    async def list_principals(self, caller_id: str, search: str = "") -> List[DirectoryEntry]:
        """All active users except the caller, filtered by display name."""
        try:
            users = await run_in_threadpool(self._active_users)
        except SQLAlchemyError as e:
            logger.error(f"Error fetching users: {e}")
            raise ReadError("Failed to load users. Please try again.") from e

        term = (search or "").lower()
        return [
            DirectoryEntry(id=user.id, display_name=user.username, email=user.email)
            for user in users
            if user.id != caller_id and term in user.username.lower()
        ]

    async def select(self, caller_id: str, principal_id: str) -> Principal:
        """Resolve a directory pick into the principal an appointment is proposed with."""
        if principal_id == caller_id:
            raise ValidationError("You cannot schedule an appointment with yourself.")
        try:
            user = await run_in_threadpool(self._active_user, principal_id)
        except SQLAlchemyError as e:
            logger.error(f"Error fetching user {principal_id}: {e}")
            raise ReadError("Failed to load users. Please try again.") from e
        if not user:
            raise ValidationError("Selected user does not exist.")
        return Principal(id=user.id, display_name=user.username)

    def _active_users(self) -> List[User]:
        return (
            self.db.query(User)
            .filter(User.is_active == True)  # noqa: E712
            .order_by(User.username.asc())
            .all()
        )

    def _active_user(self, principal_id: str) -> Optional[User]:
        return (
            self.db.query(User)
            .filter(User.id == principal_id, User.is_active == True)  # noqa: E712
            .first()
        )
