"""
Cache-backed user repository.

Reads go to Redis first and fall back to PostgreSQL, repopulating the cache
on the way out. Writes go to PostgreSQL first; only after the write has
committed are cache entries populated or invalidated. Cache failures never
fail an operation: they are logged, counted, and returned to the caller in
``Outcome.warnings``.

Key layout::

    user:<uuid>                 one record, USER_TTL
    users:list:<page>:<limit>   one page, newest first, shorter LIST_TTL

Any create, update or delete drops every ``users:list:*`` key. Inserting or
removing one row shifts the contents of every later page, so per-page
invalidation cannot be correct.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Mapping, Optional, Tuple, TypeVar, Union
from uuid import UUID, uuid4

from shared.errors import (
    ConflictError,
    NotFoundError,
    SerializationError,
    UpstreamUnavailableError,
    ValidationError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..cache.redis_cache import RedisCache
from ..models import (
    NewUser,
    User,
    UserChanges,
    decode_user,
    decode_users,
    encode_user,
    encode_users,
)
from ..persistence.postgres import UserStore

T = TypeVar("T")

USER_CACHE_PREFIX = "user:"
USER_CACHE_PATTERN = f"{USER_CACHE_PREFIX}*"
USERS_CACHE_KEY = "users:list"
USERS_CACHE_PATTERN = f"{USERS_CACHE_KEY}:*"

DEFAULT_USER_TTL = 3600
DEFAULT_LIST_TTL = 1800
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def user_key(user_id: Union[UUID, str]) -> str:
    return f"{USER_CACHE_PREFIX}{user_id}"


def users_page_key(page: int, limit: int) -> str:
    return f"{USERS_CACHE_KEY}:{page}:{limit}"


def normalize_page(
    page: Optional[int],
    limit: Optional[int],
    default_limit: int = DEFAULT_PAGE_SIZE,
    max_limit: int = MAX_PAGE_SIZE,
) -> Tuple[int, int]:
    """Caller-side pagination policy: page >= 1, 1 <= limit <= max_limit (else the default)."""
    page = page if page and page >= 1 else 1
    if limit is None or limit < 1 or limit > max_limit:
        limit = default_limit
    return page, limit


def parse_identifier(user_id: Union[UUID, str]) -> UUID:
    if isinstance(user_id, UUID):
        return user_id
    try:
        return UUID(str(user_id))
    except ValueError:
        raise ValidationError("Invalid user ID format", {"user_id": str(user_id)})


@dataclass(frozen=True)
class CacheWarning:
    """A cache step that failed after the primary operation succeeded."""
    operation: str
    key: str
    message: str


@dataclass
class Outcome(Generic[T]):
    """Result of a repository call plus its cache side-channel."""
    value: T
    from_cache: bool = False
    warnings: List[CacheWarning] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)


@dataclass
class HealthReport:
    status: str
    services: Dict[str, Dict[str, str]]


class CachedUserRepository:
    """Read-through / write-invalidate repository over UserStore and RedisCache."""

    def __init__(
        self,
        store: UserStore,
        cache: RedisCache,
        *,
        user_ttl: int = DEFAULT_USER_TTL,
        list_ttl: int = DEFAULT_LIST_TTL,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.cache = cache
        self.user_ttl = user_ttl
        self.list_ttl = list_ttl
        self.metrics = metrics
        self.logger = get_logger("users.repository")

    # Reads

    async def fetch_one(self, user_id: Union[UUID, str]) -> Outcome[User]:
        uid = parse_identifier(user_id)
        key = user_key(uid)
        warnings: List[CacheWarning] = []

        payload = await self._cache_get(key, warnings)
        if payload is not None:
            try:
                user = decode_user(payload)
                self._count("cache_hits_total", cache_type="user")
                self.logger.debug("User retrieved from cache", user_id=str(uid))
                return Outcome(user, from_cache=True, warnings=warnings)
            except SerializationError as e:
                self._warn(warnings, "decode", key, e)

        self._count("cache_misses_total", cache_type="user")
        user = await self.store.get_active_by_id(uid)
        if user is None:
            raise NotFoundError("User not found")

        await self._cache_set(key, encode_user(user), self.user_ttl, warnings)
        return Outcome(user, warnings=warnings)

    async def fetch_page(self, page: int, limit: int) -> Outcome[List[User]]:
        """One page of active users, newest first. ``page``/``limit`` must already be normalized."""
        key = users_page_key(page, limit)
        warnings: List[CacheWarning] = []

        payload = await self._cache_get(key, warnings)
        if payload is not None:
            try:
                users = decode_users(payload)
                self._count("cache_hits_total", cache_type="user_list")
                self.logger.debug("Users retrieved from cache", page=page, limit=limit)
                return Outcome(users, from_cache=True, warnings=warnings)
            except SerializationError as e:
                self._warn(warnings, "decode", key, e)

        self._count("cache_misses_total", cache_type="user_list")
        users = await self.store.list_active(limit=limit, offset=(page - 1) * limit)

        await self._cache_set(key, encode_users(users), self.list_ttl, warnings)
        return Outcome(users, warnings=warnings)

    # Writes

    async def create_one(self, draft: NewUser) -> Outcome[User]:
        # Best-effort pre-check; the partial unique index settles races
        if await self.store.get_active_by_email(draft.email) is not None:
            raise ConflictError("User with this email already exists", {"email": draft.email})

        now = datetime.now(timezone.utc)
        user = User(
            id=uuid4(),
            email=draft.email,
            username=draft.username,
            first_name=draft.first_name,
            last_name=draft.last_name,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert(user)

        warnings: List[CacheWarning] = []
        await self._cache_set(user_key(user.id), encode_user(user), self.user_ttl, warnings)
        await self._invalidate_pages(warnings)

        self.logger.info("User created", user_id=str(user.id), email=user.email)
        return Outcome(user, warnings=warnings)

    async def update_one(
        self,
        user_id: Union[UUID, str],
        changes: Union[UserChanges, Mapping[str, Any]],
    ) -> Outcome[User]:
        if isinstance(changes, UserChanges):
            changes = changes.as_fields()
        fields = UserChanges.from_mapping(changes).as_fields()
        if not fields:
            raise ValidationError("No updates provided")
        uid = parse_identifier(user_id)

        email = fields.get("email")
        if email is not None:
            holder = await self.store.get_active_by_email(email)
            if holder is not None and holder.id != uid:
                raise ConflictError("User with this email already exists", {"email": email})

        if not await self.store.update_active(uid, fields):
            raise NotFoundError("User not found")

        key = user_key(uid)
        warnings: List[CacheWarning] = []
        await self._cache_delete(key, warnings)
        await self._invalidate_pages(warnings)

        # The store computes the post-update row; the cache never patches in place
        user = await self.store.get_active_by_id(uid)
        if user is None:
            raise NotFoundError("User not found")
        await self._cache_set(key, encode_user(user), self.user_ttl, warnings)

        self.logger.info("User updated", user_id=str(uid), fields=sorted(fields))
        return Outcome(user, warnings=warnings)

    async def delete_one(self, user_id: Union[UUID, str]) -> Outcome[None]:
        uid = parse_identifier(user_id)
        if not await self.store.soft_delete(uid):
            raise NotFoundError("User not found")

        warnings: List[CacheWarning] = []
        await self._cache_delete(user_key(uid), warnings)
        await self._invalidate_pages(warnings)

        self.logger.info("User deleted", user_id=str(uid))
        return Outcome(None, warnings=warnings)

    # Health and stats

    async def health(self) -> HealthReport:
        """Check store and cache independently. Only a store failure is fatal."""
        services: Dict[str, Dict[str, str]] = {}
        status = "ok"

        try:
            await self.store.ping()
            services["postgresql"] = {"status": "ok"}
        except UpstreamUnavailableError as e:
            services["postgresql"] = {"status": "error", "message": e.message}
            status = "error"

        try:
            await self.cache.ping()
            services["redis"] = {"status": "ok"}
        except UpstreamUnavailableError as e:
            services["redis"] = {"status": "error", "message": e.message}
            if status == "ok":
                status = "degraded"

        return HealthReport(status=status, services=services)

    async def stats(self) -> Dict[str, Any]:
        """Active-row count (never cached) and cache key counts per key family."""
        stats: Dict[str, Any] = {"active_users": await self.store.count_active()}
        try:
            stats["cache"] = {
                "cached_users": len(await self.cache.keys_matching(USER_CACHE_PATTERN)),
                "cached_pages": len(await self.cache.keys_matching(USERS_CACHE_PATTERN)),
                "enumeration": self.cache.enumeration.name,
                **await self.cache.info(),
            }
        except UpstreamUnavailableError as e:
            stats["cache"] = {"error": e.message}
        return stats

    # Cache helpers; all best-effort

    async def _invalidate_pages(self, warnings: List[CacheWarning]) -> int:
        try:
            keys = await self.cache.keys_matching(USERS_CACHE_PATTERN)
            if not keys:
                return 0
            deleted = await self.cache.delete(*keys)
            self.logger.debug("Invalidated users list cache", keys=len(keys))
            return deleted
        except UpstreamUnavailableError as e:
            self._warn(warnings, "invalidate_pages", USERS_CACHE_PATTERN, e)
            return 0

    async def _cache_get(self, key: str, warnings: List[CacheWarning]) -> Optional[bytes]:
        try:
            return await self.cache.get(key)
        except UpstreamUnavailableError as e:
            self._warn(warnings, "get", key, e)
            return None

    async def _cache_set(self, key: str, payload: bytes, ttl: int, warnings: List[CacheWarning]) -> None:
        try:
            await self.cache.set(key, payload, ttl)
        except UpstreamUnavailableError as e:
            self._warn(warnings, "set", key, e)

    async def _cache_delete(self, key: str, warnings: List[CacheWarning]) -> None:
        try:
            await self.cache.delete(key)
        except UpstreamUnavailableError as e:
            self._warn(warnings, "delete", key, e)

    def _warn(self, warnings: List[CacheWarning], operation: str, key: str, error: Exception) -> None:
        message = getattr(error, "message", str(error))
        warnings.append(CacheWarning(operation=operation, key=key, message=message))
        self.logger.warning("Cache operation failed", operation=operation, key=key, error=message)
        self._count("cache_maintenance_failures_total", operation=operation)

    def _count(self, metric: str, **labels) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric, **labels)
