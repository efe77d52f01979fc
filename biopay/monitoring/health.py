"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
- Audit relay reachability
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from biopay.database.connection import session_scope
from biopay.integrations.audit_relay_client import AuditRelayClient

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    The audit relay is reported but never makes the service unready:
    payments keep settling while the relay is down.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        audit_client: Optional[AuditRelayClient] = None,
    ) -> None:
        self._session_factory = session_factory
        self.audit_client = audit_client or AuditRelayClient()

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with session_scope(self._session_factory) as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_audit_relay(self) -> Dict[str, Any]:
        """
        Check audit relay reachability.

        Raises:
            HealthCheckError: If the relay does not report ok
        """
        if not await self.audit_client.is_healthy():
            logger.warning("audit_relay_health_check_failed")
            raise HealthCheckError("Audit relay health check failed")

        return {
            "status": "healthy",
            "service": "audit_relay",
            "message": "Audit relay reachable",
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        try:
            checks["audit_relay"] = await self.check_audit_relay()
        except HealthCheckError as e:
            checks["audit_relay"] = {
                "status": "degraded",
                "service": "audit_relay",
                "error": str(e),
            }

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Simple check that the application is running."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Check if the application can settle payments."""
        return await self.check_all()
