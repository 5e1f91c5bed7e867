"""
Health checks for liveness and readiness endpoints.

Checks:
- Database connectivity
- Redis connectivity (only when the webhook replay cache is enabled)
- Stripe API reachability
"""
import asyncio
from typing import Any, Dict

import redis.asyncio as aioredis
import stripe
import structlog
from sqlalchemy import text

from config import get_settings
from database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Dependency checks reported by /health and /health/ready."""

    def __init__(self) -> None:
        self.settings = get_settings()

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If the database cannot be queried
        """
        try:
            async with get_session_factory()() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e
        return {"status": "healthy", "service": "database"}

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Redis only backs the webhook replay cache, so it is reported as
        disabled rather than unhealthy when that cache is off.
        """
        if not self.settings.webhook_dedup_cache_enabled:
            return {"status": "disabled", "service": "redis"}

        redis_client: aioredis.Redis | None = None
        try:
            redis_client = aioredis.from_url(self.settings.redis_url)
            await redis_client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}") from e
        finally:
            if redis_client is not None:
                await redis_client.aclose()
        return {"status": "healthy", "service": "redis"}

    async def check_stripe(self) -> Dict[str, Any]:
        """Check that the Stripe API answers with our key."""
        try:
            stripe.api_key = self.settings.stripe_secret_key
            await asyncio.get_running_loop().run_in_executor(None, stripe.Balance.retrieve)
        except Exception as e:
            logger.error("stripe_health_check_failed", error=str(e))
            raise HealthCheckError(f"Stripe health check failed: {str(e)}") from e
        return {
            "status": "healthy",
            "service": "stripe",
            "test_mode": self.settings.is_test_mode,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run every check; the service is healthy only if none failed."""
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("redis", self.check_redis),
            ("stripe", self.check_stripe),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {"status": "healthy" if all_healthy else "unhealthy", "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """The process is up; dependencies are not consulted."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
