"""
DASHBOARD SERVICE

Read-side summary for one tenant: the denormalized counters plus each
entity's stats for a date range. Results are cached per (tenant, range)
and dropped by the post-write invalidation every repository runs.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from typing import Any, Dict, Optional
import logging

from core.cache_service import TenantReadCache
from core.tenant_repository import TenantRepository

logger = logging.getLogger(__name__)


class DashboardService:

    NAMESPACE = "dashboard_summary"

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        cache: TenantReadCache,
        repositories: Dict[str, Any],
        tenants: Optional[TenantRepository] = None
    ):
        self.db = db
        self.cache = cache
        self.repositories = repositories
        self.tenants = tenants or TenantRepository(db)

    async def get_summary(self, tenant_id: str, start=None, end=None) -> Dict[str, Any]:
        shape = self.cache.make_shape(start, end)
        ttl = self.cache.ttl_for_range(end)

        async def compute():
            summary: Dict[str, Any] = {"counters": await self.tenants.get_counters(tenant_id)}
            for name, repository in self.repositories.items():
                stats = await repository.get_stats(tenant_id, start, end)
                stats.pop("_cached", None)
                summary[name] = stats
            logger.debug(f"[CACHE] Dashboard summary computed for tenant:{tenant_id}")
            return summary

        return await self.cache.get_or_compute(tenant_id, self.NAMESPACE, shape, compute, ttl)
