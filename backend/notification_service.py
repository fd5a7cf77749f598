from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import List, Optional
import logging

logger = logging.getLogger(__name__)


class NotificationService:
    """Out-of-band dashboard update events (INSERT ONLY, best effort)"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.dashboard_events

    async def emit_dashboard_update(
        self,
        tenant_id: str,
        counters: Optional[List[str]] = None,
        reason: str = ""
    ):
        """
        Record that the tenant's dashboard figures changed.

        Never raises: the write that triggered the event has already been
        committed.
        """
        try:
            event = {
                "tenant_id": tenant_id,
                "counters": list(counters or []),
                "reason": reason,
                "timestamp": datetime.utcnow()
            }
            await self.collection.insert_one(event)
            logger.debug(f"[NOTIFY] Dashboard update for tenant:{tenant_id} ({reason})")
        except Exception as e:
            # Don't fail the main operation if the notification fails
            logger.error(f"[NOTIFY] Failed to emit dashboard update for tenant:{tenant_id}: {str(e)}")

    async def get_recent_events(self, tenant_id: str, limit: int = 50):
        """Latest events for one tenant (READ ONLY)"""
        cursor = self.collection.find({"tenant_id": tenant_id}).sort("timestamp", -1).limit(limit)
        events = await cursor.to_list(length=limit)

        for event in events:
            event["event_id"] = str(event.pop("_id"))

        return events
