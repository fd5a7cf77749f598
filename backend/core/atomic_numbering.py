"""
TENANT SEQUENCE ALLOCATOR

Provides:
1. Atomic per-tenant, per-counter sequence allocation ($inc on the tenant record)
2. Human-readable identifier formatting (prefix + zero padding)
3. Fallback chain: tenant sequence -> fallback counter document -> timestamp id

Uniqueness of the final identifier is enforced by each repository's
compound (tenant_id, identifier) unique index, not here.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from datetime import datetime
from typing import Optional
import logging
import time

from core.errors import DependencyUnavailableError, NotFoundError
from core.mongo_utils import to_object_id

logger = logging.getLogger(__name__)

DEFAULT_NUMBER_PADDING = 3
MIN_NUMBER_PADDING = 1
MAX_NUMBER_PADDING = 10


def clamp_padding(value) -> int:
    """Clamp a padding setting into 1..10, falling back to the default"""
    try:
        width = int(value)
    except (TypeError, ValueError):
        return DEFAULT_NUMBER_PADDING
    return max(MIN_NUMBER_PADDING, min(MAX_NUMBER_PADDING, width))


def format_identifier(prefix: str, sequence: int, width: int) -> str:
    """
    Format an allocated integer as a display identifier.

    format_identifier("PO", 7, 3) -> "PO-007"
    format_identifier("", 7, 3)   -> "007"
    """
    number = str(sequence).zfill(width)
    return f"{prefix}-{number}" if prefix else number


class TenantSequenceAllocator:
    """
    Atomic sequence generator scoped to one tenant.

    Uses find_one_and_update with $inc on `sequences.<counter_name>` of the
    tenant document, so concurrent callers never receive the same value.
    An absent counter starts at 0, so the first allocation returns 1.
    """

    FALLBACK_COLLECTION = "sequence_fallbacks"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def allocate(self, tenant_id: str, counter_name: str) -> int:
        """
        Atomically increment the named sequence and return the NEW value.

        Raises:
            NotFoundError: tenant record missing
            DependencyUnavailableError: tenant store unreachable
        """
        tenant_oid = to_object_id(tenant_id)
        if tenant_oid is None:
            raise NotFoundError("Tenant", tenant_id)

        try:
            result = await self.db.tenants.find_one_and_update(
                {"_id": tenant_oid},
                {
                    "$inc": {f"sequences.{counter_name}": 1},
                    "$set": {"updated_at": datetime.utcnow()}
                },
                projection={"sequences": 1},
                return_document=ReturnDocument.AFTER
            )
        except Exception as e:
            logger.error(f"[SEQUENCE] Allocation failed for tenant:{tenant_id} counter:{counter_name}: {str(e)}")
            raise DependencyUnavailableError(f"Sequence store unavailable: {str(e)}")

        if not result:
            raise NotFoundError("Tenant", tenant_id)

        value = result["sequences"][counter_name]
        logger.debug(f"[SEQUENCE] tenant:{tenant_id} {counter_name} -> {value}")
        return value

    async def get_number_padding(self, tenant_id: str) -> int:
        """Read the tenant's configured padding (document_settings.number_padding)"""
        tenant_oid = to_object_id(tenant_id)
        if tenant_oid is None:
            return DEFAULT_NUMBER_PADDING
        tenant = await self.db.tenants.find_one(
            {"_id": tenant_oid},
            {"document_settings.number_padding": 1}
        )
        if not tenant:
            return DEFAULT_NUMBER_PADDING
        settings = tenant.get("document_settings") or {}
        return clamp_padding(settings.get("number_padding", DEFAULT_NUMBER_PADDING))

    async def allocate_identifier(
        self,
        tenant_id: str,
        counter_name: str,
        prefix: str,
        width: int
    ) -> str:
        """Allocate from the primary sequence and format it"""
        sequence = await self.allocate(tenant_id, counter_name)
        return format_identifier(prefix, sequence, width)

    async def allocate_fallback(self, tenant_id: str, counter_name: str) -> int:
        """
        Secondary counter keyed by tenant id in a separate collection.

        Used only when the tenant record cannot serve the allocation.
        """
        result = await self.db[self.FALLBACK_COLLECTION].find_one_and_update(
            {"_id": f"{counter_name}_{tenant_id}"},
            {
                "$inc": {"sequence": 1},
                "$setOnInsert": {"tenant_id": tenant_id, "counter_name": counter_name}
            },
            upsert=True,
            return_document=ReturnDocument.AFTER
        )
        return (result or {}).get("sequence") or 1

    async def allocate_identifier_with_fallback(
        self,
        tenant_id: str,
        counter_name: str,
        prefix: str,
        width: int
    ) -> str:
        """
        Allocate an identifier, degrading through the fallback chain.

        1. tenant sequence
        2. per-tenant counter document in `sequence_fallbacks`, formatted
           `<PREFIX>-F<n>` so it never meets a primary identifier
        3. timestamp-derived `<PREFIX>-T<last 6 ms digits>` (last resort)
        """
        try:
            return await self.allocate_identifier(tenant_id, counter_name, prefix, width)
        except Exception as e:
            logger.error(f"[SEQUENCE] Primary allocation failed for tenant:{tenant_id} {counter_name}: {str(e)}")

        try:
            number = format_identifier("", await self.allocate_fallback(tenant_id, counter_name), width)
            identifier = f"{prefix}-F{number}" if prefix else f"F{number}"
            logger.warning(f"[SEQUENCE] Using fallback counter for tenant:{tenant_id}: {identifier}")
            return identifier
        except Exception as e:
            logger.warning(f"[SEQUENCE] Fallback counter failed for tenant:{tenant_id}, using timestamp id: {str(e)}")

        timestamp = str(int(time.time() * 1000))[-6:]
        return f"{prefix}-T{timestamp}" if prefix else f"T{timestamp}"

    async def create_unique_constraints(self):
        """Index the fallback counter collection by tenant"""
        try:
            await self.db[self.FALLBACK_COLLECTION].create_index(
                [("tenant_id", 1), ("counter_name", 1)],
                name="idx_sequence_fallback_tenant"
            )
        except Exception as e:
            logger.warning(f"Index creation result: {str(e)}")
