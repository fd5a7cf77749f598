"""
SITE VISIT REPOSITORY

Site visit ids (SV-nnn) go through the full allocator fallback chain.
Stats and the per-customer grouping are served through the read cache.
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging
import math

from core.base_repository import EntityRepository, validate_payload
from core.counter_sync import TOTAL_SITE_VISITS
from models import SiteVisitCreate, SiteVisitUpdate, StatusUpdate

logger = logging.getLogger(__name__)

SITE_VISIT_STATUSES = ["pending", "invoiced", "paid", "converted"]
RECENT_VISIT_DAYS = 7


def days_since(value: Optional[datetime], now: Optional[datetime] = None) -> int:
    """Whole days since the visit, rounded up"""
    if not value:
        return 0
    now = now or datetime.utcnow()
    return math.ceil(abs((now - value).total_seconds()) / 86400)


class SiteVisitRepository(EntityRepository):
    entity_name = "Site visit"
    collection_name = "site_visits"
    identifier_field = "visit_id"
    sequence_name = "site_visit"
    identifier_prefix = "SV"
    identifier_width = 3
    counter_name = TOTAL_SITE_VISITS
    create_model = SiteVisitCreate
    update_model = SiteVisitUpdate
    statuses = SITE_VISIT_STATUSES
    search_fields = ["visit_id", "customer_name", "project_title", "contact_no", "location"]
    date_field = "date"
    list_fields = [
        "visit_id", "customer_name", "project_title", "contact_no", "location",
        "date", "site_type", "charge", "status", "created_at"
    ]

    STATS_NAMESPACE = "site_visit_stats"
    GROUPED_NAMESPACE = "site_visit_grouped"

    async def generate_identifier(self, tenant_id: str, doc: Dict[str, Any]) -> str:
        return await self.allocator.allocate_identifier_with_fallback(
            tenant_id, self.sequence_name, self.identifier_prefix, self.identifier_width
        )

    def derive(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        elapsed = days_since(doc.get("date"))
        return {"days_since_visit": elapsed, "is_recent": elapsed <= RECENT_VISIT_DAYS}

    async def _prepare_create(self, tenant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not payload.get("visit_id"):
            payload.pop("visit_id", None)
        payload["date"] = payload.get("date") or datetime.utcnow()
        return payload

    async def update_status(self, tenant_id: str, visit_id: str, data: Any) -> Dict[str, Any]:
        status = validate_payload(StatusUpdate, data if isinstance(data, dict) else {"status": data})["status"]
        self._validate_status(status)
        updated = await self.apply_changes(tenant_id, visit_id, {"status": status})
        await self._after_write(tenant_id, "status")
        return self.to_detail(updated)

    # =========================================================================
    # CACHED AGGREGATES
    # =========================================================================

    async def get_stats(self, tenant_id: str, date_from=None, date_to=None) -> Dict[str, Any]:
        shape = self.cache.make_shape(date_from, date_to)
        ttl = self.cache.ttl_for_range(date_to)

        async def compute():
            match = self.build_list_query(tenant_id, date_from=date_from, date_to=date_to)
            pipeline = [
                {"$match": match},
                {"$group": {"_id": "$status", "count": {"$sum": 1}, "revenue": {"$sum": "$charge"}}}
            ]
            rows = await self.collection.aggregate(pipeline).to_list(length=None)
            by_status = {row["_id"]: row for row in rows}
            return {
                "total_visits": sum(row["count"] for row in rows),
                "total_revenue": round(float(sum(row.get("revenue") or 0 for row in rows)), 2),
                "pending_count": by_status.get("pending", {}).get("count", 0),
                "invoiced_count": by_status.get("invoiced", {}).get("count", 0),
                "paid_count": by_status.get("paid", {}).get("count", 0),
                "converted_count": by_status.get("converted", {}).get("count", 0),
            }

        return await self.cache.get_or_compute(tenant_id, self.STATS_NAMESPACE, shape, compute, ttl)

    async def get_grouped_by_customer(self, tenant_id: str, search: Optional[str] = None,
                                      date_from=None, date_to=None) -> Dict[str, Any]:
        shape = self.cache.make_shape(search, date_from, date_to)
        ttl = self.cache.ttl_for_range(date_to)

        async def compute():
            query = self.build_list_query(tenant_id, search=search, date_from=date_from, date_to=date_to)
            docs = await self.collection.find(query).sort("date", -1).to_list(length=None)

            groups: Dict[str, Dict[str, Any]] = {}
            for doc in docs:
                name = doc.get("customer_name", "")
                group = groups.setdefault(name, {
                    "customer_name": name,
                    "contact_no": doc.get("contact_no", ""),
                    "visits": [],
                    "total_visits": 0,
                    "total_revenue": 0.0,
                })
                group["visits"].append(self.to_detail(doc))
                group["total_visits"] += 1
                group["total_revenue"] = round(group["total_revenue"] + float(doc.get("charge") or 0), 2)

            return {"data": [groups[name] for name in sorted(groups)]}

        return await self.cache.get_or_compute(tenant_id, self.GROUPED_NAMESPACE, shape, compute, ttl)
