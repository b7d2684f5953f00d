"""
Users service for the P4rsec platform.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import RateLimitError

from .cache.key_enumeration import build_enumeration
from .cache.redis_cache import RedisCache
from .models import (
    CreateUserRequest,
    UpdateUserRequest,
    UserEnvelope,
    UserListResponse,
    UserResponse,
)
from .persistence.postgres import UserStore
from .ratelimit.limiter import FixedWindowRateLimiter
from .repository.user_repository import (
    USERS_CACHE_KEY,
    CachedUserRepository,
    Outcome,
    normalize_page,
)


class UsersService(BaseService):
    """Users service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None):
        super().__init__("users", 8080, config)

        self.persistence = UserStore(
            self.config.postgres_dsn,
            min_size=self.config.postgres_min_connections,
            max_size=self.config.postgres_max_connections,
            timeout=self.config.store_timeout_seconds,
            metrics=self.metrics,
        )
        # Only collection keys are swept in bulk; singular keys are deleted by name
        self.cache = RedisCache(
            self.config.redis_url,
            timeout=self.config.cache_timeout_seconds,
            max_connections=self.config.redis_max_connections,
            enumeration=build_enumeration(self.config.cache_key_enumeration, [USERS_CACHE_KEY]),
        )
        self.repository = CachedUserRepository(
            self.persistence,
            self.cache,
            user_ttl=self.config.user_cache_ttl_seconds,
            list_ttl=self.config.user_list_cache_ttl_seconds,
            metrics=self.metrics,
        )
        self.rate_limiter = FixedWindowRateLimiter(
            self.cache,
            limit=self.config.rate_limit_requests,
            window_seconds=self.config.rate_limit_window_seconds,
        )

        self._setup_users_routes()

    async def _enforce_rate_limit(self, request: Request, response: Response):
        """Per-client fixed-window limit on the user routes."""
        client_id = request.client.host if request.client else "unknown"
        status = await self.rate_limiter.check_rate_limit(client_id)
        response.headers["X-RateLimit-Limit"] = str(status["limit"])
        response.headers["X-RateLimit-Remaining"] = str(status["remaining"])
        if not status["allowed"]:
            self.metrics.increment_counter("rate_limit_hits_total", endpoint=request.url.path)
            raise RateLimitError(details={"retry_after": status["retry_after"]})

    def _annotate(self, response: Response, outcome: Outcome):
        """Expose the cache side-channel as response headers."""
        response.headers["X-Cache"] = "HIT" if outcome.from_cache else "MISS"
        if outcome.warnings:
            response.headers["X-Cache-Warnings"] = str(len(outcome.warnings))

    def _setup_users_routes(self):
        """Set up users-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "users",
                "message": "P4rsec API Server",
                "version": self.version,
                "environment": self.config.env
            }

        api = APIRouter(prefix="/api/v1")
        users = APIRouter(prefix="/users", dependencies=[Depends(self._enforce_rate_limit)])

        @api.get("/health")
        async def api_health():
            """Health of the record store (critical) and the cache (advisory)."""
            return await self.health_response()

        @users.get("", response_model=UserListResponse)
        async def list_users(
            response: Response,
            page: int = Query(1, description="Page number, from 1"),
            limit: int = Query(self.config.default_page_size, description="Items per page")
        ):
            """List active users, newest first."""
            page, limit = normalize_page(
                page, limit,
                default_limit=self.config.default_page_size,
                max_limit=self.config.max_page_size,
            )
            outcome = await self.repository.fetch_page(page, limit)
            self._annotate(response, outcome)
            return UserListResponse(
                users=[UserResponse.from_user(user) for user in outcome.value],
                page=page,
                limit=limit
            )

        @users.post("", status_code=201, response_model=UserEnvelope)
        async def create_user(request: CreateUserRequest, response: Response):
            """Create a user."""
            outcome = await self.repository.create_one(request.to_draft())
            self._annotate(response, outcome)
            return UserEnvelope(user=UserResponse.from_user(outcome.value))

        @users.get("/stats")
        async def user_stats():
            """Active-user count and cache statistics."""
            return await self.repository.stats()

        @users.get("/{user_id}", response_model=UserEnvelope)
        async def get_user(user_id: str, response: Response):
            """Get one active user."""
            outcome = await self.repository.fetch_one(user_id)
            self._annotate(response, outcome)
            return UserEnvelope(user=UserResponse.from_user(outcome.value))

        @users.put("/{user_id}", response_model=UserEnvelope)
        async def update_user(user_id: str, request: UpdateUserRequest, response: Response):
            """Partially update an active user."""
            outcome = await self.repository.update_one(user_id, request.to_changes())
            self._annotate(response, outcome)
            return UserEnvelope(user=UserResponse.from_user(outcome.value))

        @users.delete("/{user_id}", status_code=204)
        async def delete_user(user_id: str):
            """Soft-delete an active user."""
            outcome = await self.repository.delete_one(user_id)
            response = Response(status_code=204)
            self._annotate(response, outcome)
            return response

        api.include_router(users)
        self.app.include_router(api)

    async def _check_dependencies(self):
        """Check users service dependencies."""
        report = await self.repository.health()
        return report.status, report.services

    async def start(self):
        """Start users service components."""
        await self.persistence.start()
        await self.cache.start()
        self.logger.info("Users service started", port=self.config.port, environment=self.config.env)

    async def stop(self):
        """Stop users service components."""
        await self.cache.stop()
        await self.persistence.stop()
        self.logger.info("Users service stopped")


def create_app():
    """Create users service application."""
    service = UsersService()
    return service.app


def main():
    UsersService().run()


if __name__ == "__main__":
    main()
