"""
CUSTOMER REPOSITORY

Customers are keyed by phone number within a tenant. No dashboard counter.
"""

from typing import Any, Dict, List
import re

from core.base_repository import EntityRepository
from models import CustomerCreate, CustomerUpdate

PHONE_SEARCH_LIMIT = 10


def normalize_phone(phone: str) -> str:
    return re.sub(r"[\s\-()]", "", phone or "")


class CustomerRepository(EntityRepository):
    entity_name = "Customer"
    collection_name = "customers"
    identifier_field = "phone"
    create_model = CustomerCreate
    update_model = CustomerUpdate
    search_fields = ["name", "phone", "email"]

    async def _prepare_create(self, tenant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        payload["phone"] = normalize_phone(payload["phone"])
        payload["name"] = payload["name"].strip()
        return payload

    async def search_by_phone(self, tenant_id: str, phone: str) -> List[Dict[str, Any]]:
        """Prefix match on the normalized phone number"""
        digits = normalize_phone(phone)
        if not digits:
            return []
        cursor = self.collection.find({
            "tenant_id": tenant_id,
            "phone": {"$regex": f"^{re.escape(digits)}"}
        }).sort("phone", 1).limit(PHONE_SEARCH_LIMIT)
        return [self.to_detail(doc) for doc in await cursor.to_list(length=PHONE_SEARCH_LIMIT)]
