"""
READ-PATH CACHE

Process-scoped, tenant-keyed cache for expensive aggregate reads
(stats, groupings, dashboard summary).

Keys are (tenant_id, namespace, shape). TTL is chosen per entry from the
recency of the queried date range:
    range ends today or in the future  -> 300s
    range ended 1-7 days ago           -> 900s
    range ended more than 7 days ago   -> 3600s

Writers call invalidate_tenant() after every mutation so no stale entry
survives a write that changes its inputs. TTL is only the backstop.
Each invalidation bumps a per-tenant generation; a result computed across
a generation change is returned but never stored.
"""

from datetime import datetime, date
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple
import copy
import logging
import time

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str, str]


def _as_datetime(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return None


class TenantReadCache:
    """In-memory TTL cache with per-tenant invalidation"""

    CURRENT_TTL = 300
    RECENT_TTL = 900
    HISTORICAL_TTL = 3600

    def __init__(self, default_ttl: int = CURRENT_TTL, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[CacheKey, Tuple[float, Any]] = {}
        self._generations: Dict[str, int] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_shape(*parts) -> str:
        """Stable string for a query shape; None renders as 'all'"""
        return "_".join("all" if p is None or p == "" else str(p) for p in parts)

    def ttl_for_range(self, to_date=None) -> int:
        """Pick a TTL from how long ago the queried range ended"""
        end = _as_datetime(to_date)
        if end is None:
            return self.default_ttl

        days_since_end = (datetime.utcnow() - end).total_seconds() / 86400
        if days_since_end > 7:
            return self.HISTORICAL_TTL
        if days_since_end > 1:
            return self.RECENT_TTL
        return self.default_ttl

    def generation(self, tenant_id: str) -> int:
        return self._generations.get(str(tenant_id), 0)

    def get(self, tenant_id: str, namespace: str, shape: str) -> Optional[Any]:
        key = (str(tenant_id), namespace, shape)
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return copy.deepcopy(value)

    def set(self, tenant_id: str, namespace: str, shape: str, value: Any, ttl: Optional[int] = None):
        key = (str(tenant_id), namespace, shape)
        self._entries[key] = (self._clock() + (ttl or self.default_ttl), copy.deepcopy(value))

    async def get_or_compute(
        self,
        tenant_id: str,
        namespace: str,
        shape: str,
        compute: Callable[[], Awaitable[Dict[str, Any]]],
        ttl: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Serve a dict result from cache, computing it on a miss.

        The returned dict carries `_cached` (True on hit) for observability.
        """
        cached = self.get(tenant_id, namespace, shape)
        if cached is not None:
            self.hits += 1
            logger.debug(f"[CACHE] hit {namespace}:{tenant_id}:{shape}")
            cached["_cached"] = True
            return cached

        self.misses += 1
        generation = self.generation(tenant_id)
        result = await compute()
        if self.generation(tenant_id) == generation:
            self.set(tenant_id, namespace, shape, result, ttl)
            logger.debug(f"[CACHE] miss {namespace}:{tenant_id}:{shape} (ttl={ttl or self.default_ttl})")
        else:
            logger.debug(f"[CACHE] {namespace}:{tenant_id}:{shape} invalidated while computing, not stored")

        response = dict(result)
        response["_cached"] = False
        return response

    def invalidate_tenant(self, tenant_id: str, namespaces: Optional[Iterable[str]] = None) -> int:
        """Drop every entry for the tenant, optionally limited to some namespaces"""
        tenant_key = str(tenant_id)
        self._generations[tenant_key] = self._generations.get(tenant_key, 0) + 1
        wanted = set(namespaces) if namespaces is not None else None
        doomed = [
            key for key in self._entries
            if key[0] == tenant_key and (wanted is None or key[1] in wanted)
        ]
        for key in doomed:
            self._entries.pop(key, None)
        if doomed:
            logger.info(f"[CACHE] Invalidated {len(doomed)} entries for tenant:{tenant_id}")
        return len(doomed)

    def safe_invalidate(self, tenant_id: str, namespaces: Optional[Iterable[str]] = None):
        try:
            self.invalidate_tenant(tenant_id, namespaces)
        except Exception as e:
            logger.error(f"[CACHE] Invalidation failed for tenant:{tenant_id}: {str(e)}")

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
