"""
Dependency health for the liveness and readiness probes.

The database and Redis are hard dependencies. Providers are soft ones:
with one processor down the service still takes payments through the
others, so a failing provider only degrades the overall status.
"""
import asyncio
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog

from native_payments.config import get_settings
from native_payments.database.connection import ping_database
from native_payments.integrations.registry import ProviderRegistry, get_provider_registry

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when a dependency does not answer."""


class HealthCheck:
    """Runs the dependency checks behind ``/health`` and ``/health/ready``."""

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.settings = get_settings()
        self.registry = registry or get_provider_registry()
        self.redis_client = redis_client

    async def check_database(self) -> Dict[str, Any]:
        try:
            latency_ms = await ping_database()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}") from e
        return {"status": "healthy", "service": "database", "latency_ms": round(latency_ms, 2)}

    async def check_redis(self) -> Dict[str, Any]:
        """
        Ping Redis (idempotency cache, webhook dedup, locks, outbox stream).

        Raises:
            HealthCheckError: If Redis does not answer
        """
        client = self.redis_client or aioredis.from_url(
            self.settings.redis_url, encoding="utf-8", decode_responses=True
        )
        try:
            await client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {e}") from e
        finally:
            if client is not self.redis_client:
                await client.close()
        return {"status": "healthy", "service": "redis"}

    async def check_provider(self, provider_id: str) -> Dict[str, Any]:
        """
        Check one provider.

        An open circuit breaker is reported without calling the provider.

        Raises:
            HealthCheckError: If the breaker is open or the provider does not answer
        """
        adapter = self.registry.get(provider_id)
        breaker_state = adapter.circuit_breaker.state
        if breaker_state == "open":
            raise HealthCheckError(f"{provider_id} circuit breaker is open")
        try:
            await adapter.ping()
        except Exception as e:
            logger.error("provider_health_check_failed", provider=provider_id, error=str(e))
            raise HealthCheckError(f"{provider_id} health check failed: {e}") from e
        return {
            "status": "healthy",
            "service": provider_id,
            "circuit_breaker": breaker_state,
            "test_mode": self.settings.is_test_mode,
        }

    async def _run(self, name: str, check: Any, *args: Any) -> Dict[str, Any]:
        try:
            return await check(*args)
        except HealthCheckError as e:
            return {"status": "unhealthy", "service": name, "error": str(e)}

    async def check_all(self) -> Dict[str, Any]:
        """
        Run every check concurrently.

        Returns:
            Dict[str, Any]: ``healthy``, ``degraded`` (a provider is down)
            or ``unhealthy`` (the database or Redis is down), with per-check
            details under ``checks``
        """
        provider_ids = [adapter.provider_id for adapter in self.registry.available()]
        results = await asyncio.gather(
            self._run("database", self.check_database),
            self._run("redis", self.check_redis),
            *(self._run(pid, self.check_provider, pid) for pid in provider_ids),
        )
        checks = dict(zip(["database", "redis", *provider_ids], results))

        if any(checks[name]["status"] != "healthy" for name in ("database", "redis")):
            overall = "unhealthy"
        elif any(checks[pid]["status"] != "healthy" for pid in provider_ids):
            overall = "degraded"
        else:
            overall = "healthy"

        if overall != "healthy":
            logger.warning("health_check_not_healthy", status=overall)
        return {"status": overall, "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """The process is up; dependencies are not consulted."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
