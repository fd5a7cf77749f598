"""
Tenant store: the company account that owns every business record,
its sequences and its dashboard counters.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from datetime import datetime
from typing import Any, Dict
import logging

from core.atomic_numbering import DEFAULT_NUMBER_PADDING
from core.base_repository import validate_payload
from core.counter_sync import ALL_COUNTERS
from core.errors import DuplicateIdentifierError, NotFoundError
from core.mongo_utils import serialize_doc, to_object_id, with_string_id
from models import DocumentSettingsUpdate, TenantCreate

logger = logging.getLogger(__name__)


class TenantRepository:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.tenants

    async def ensure_indexes(self):
        await self.collection.create_index("email", unique=True, name="uniq_tenant_email")

    async def create_tenant(self, data: Any) -> Dict[str, Any]:
        payload = validate_payload(TenantCreate, data)
        now = datetime.utcnow()
        doc = {
            "company_name": payload["company_name"],
            "email": payload["email"].lower(),
            "document_settings": {"number_padding": payload.get("number_padding", DEFAULT_NUMBER_PADDING)},
            "sequences": {},
            "counters": {name: 0 for name in ALL_COUNTERS},
            "created_at": now,
            "updated_at": now
        }
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError:
            raise DuplicateIdentifierError("Tenant", payload["email"], retryable=False)

        doc["_id"] = result.inserted_id
        logger.info(f"[REPO] Created tenant {doc['_id']} ({doc['company_name']})")
        return serialize_doc(with_string_id(doc))

    async def get_tenant(self, tenant_id: str) -> Dict[str, Any]:
        oid = to_object_id(tenant_id)
        tenant = await self.collection.find_one({"_id": oid}) if oid else None
        if not tenant:
            raise NotFoundError("Tenant", tenant_id)
        return serialize_doc(with_string_id(tenant))

    async def get_counters(self, tenant_id: str) -> Dict[str, int]:
        """Dashboard read of every aggregate counter (0 where absent)"""
        tenant = await self.get_tenant(tenant_id)
        stored = tenant.get("counters") or {}
        return {name: stored.get(name, 0) for name in ALL_COUNTERS}

    async def update_document_settings(self, tenant_id: str, data: Any) -> Dict[str, Any]:
        payload = validate_payload(DocumentSettingsUpdate, data)
        oid = to_object_id(tenant_id)
        if oid is None:
            raise NotFoundError("Tenant", tenant_id)

        updated = await self.collection.find_one_and_update(
            {"_id": oid},
            {"$set": {
                "document_settings.number_padding": payload["number_padding"],
                "updated_at": datetime.utcnow()
            }},
            return_document=ReturnDocument.AFTER
        )
        if not updated:
            raise NotFoundError("Tenant", tenant_id)

        logger.info(f"[REPO] tenant:{tenant_id} number_padding -> {payload['number_padding']}")
        return serialize_doc(updated.get("document_settings") or {})
