"""
ENTITY REPOSITORY

Generic tenant-scoped repository instantiated once per business entity.

Every write runs one explicit pipeline:
    validate -> allocate identifier -> persist (bounded retry on collision)
    -> counter sync (best effort) -> entity hooks -> cache invalidation
    -> notification

Tenant isolation is enforced in every query filter. A record that belongs
to another tenant is reported exactly like a missing one.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel, ValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from datetime import datetime, date
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type
import asyncio
import logging
import math
import random
import re

from core.atomic_numbering import TenantSequenceAllocator
from core.cache_service import TenantReadCache
from core.counter_sync import CounterSynchronizer
from core.errors import (
    DependencyUnavailableError,
    DuplicateIdentifierError,
    IdentifierCollisionError,
    IllegalStateTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from core.mongo_utils import serialize_doc, to_object_id, with_string_id

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def validate_payload(model: Type[BaseModel], data: Any, partial: bool = False) -> Dict[str, Any]:
    """Run a pydantic model over input, converting failures to ValidationFailedError"""
    if isinstance(data, BaseModel):
        data = data.dict(exclude_unset=partial)
    try:
        parsed = model(**(data or {}))
    except ValidationError as e:
        errors = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ())),
                "message": err.get("msg", "invalid value")
            }
            for err in e.errors()
        ]
        raise ValidationFailedError(errors)
    return parsed.dict(exclude_unset=partial)


def parse_date(value) -> Optional[datetime]:
    """Accept datetime, date or ISO string; None for anything empty"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        raise ValidationFailedError([{"field": "date", "message": f"Invalid date: {value}"}])


class EntityRepository:
    """
    Base repository. Subclasses set the class attributes and override hooks.

    Hooks:
        _prepare_create(tenant_id, payload)        -> document to insert
        _prepare_update(tenant_id, existing, patch) -> $set changes
        _after_create / _after_update / _after_delete
        derive(doc)                                 -> derived read fields
    """

    entity_name = "Entity"
    collection_name = ""

    # Human identifier: field name, sequence counter, prefix and width
    identifier_field: Optional[str] = None
    unique_with: tuple = ()
    sequence_name: Optional[str] = None
    identifier_prefix = ""
    identifier_width = 3

    # Dashboard counter maintained on create/delete
    counter_name: Optional[str] = None

    create_model: Optional[Type[BaseModel]] = None
    update_model: Optional[Type[BaseModel]] = None

    # Read-path configuration
    search_fields: List[str] = []
    date_field = "created_at"
    list_fields: Optional[List[str]] = None
    statuses: Optional[List[str]] = None

    # Identifier collision retry policy
    MAX_ATTEMPTS = 3
    MAX_BACKOFF_MS = 100

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        allocator: TenantSequenceAllocator,
        counters: CounterSynchronizer,
        cache: Optional[TenantReadCache] = None,
        notifier=None
    ):
        self.db = db
        self.collection = db[self.collection_name]
        self.allocator = allocator
        self.counters = counters
        self.cache = cache
        self.notifier = notifier

    # =========================================================================
    # INDEXES
    # =========================================================================

    async def ensure_indexes(self):
        """Compound unique (tenant_id, identifier) plus listing index"""
        if self.identifier_field:
            keys = [("tenant_id", 1), (self.identifier_field, 1)]
            keys.extend((field, 1) for field in self.unique_with)
            await self.collection.create_index(
                keys,
                unique=True,
                name=f"uniq_tenant_{self.identifier_field}"
            )
        await self.collection.create_index(
            [("tenant_id", 1), (self.date_field, -1)],
            name=f"idx_tenant_{self.date_field}"
        )
        logger.info(f"[REPO] Indexes ensured for {self.collection_name}")

    # =========================================================================
    # QUERY HELPERS
    # =========================================================================

    def _scoped(self, tenant_id: str, entity_id: str) -> Dict[str, Any]:
        oid = to_object_id(entity_id)
        if oid is None:
            raise NotFoundError(self.entity_name, entity_id)
        return {"_id": oid, "tenant_id": tenant_id}

    async def get_raw(self, tenant_id: str, entity_id: str) -> Dict[str, Any]:
        doc = await self.collection.find_one(self._scoped(tenant_id, entity_id))
        if not doc:
            raise NotFoundError(self.entity_name, entity_id)
        return doc

    def derive(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        """Derived read-only fields; pure function of the stored document"""
        return {}

    def to_detail(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        view = with_string_id(doc)
        view.update(self.derive(doc))
        return serialize_doc(view)

    def to_list_item(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        return self.to_detail(doc)

    def _validate_status(self, status: Optional[str]):
        if status is None or self.statuses is None:
            return
        if status not in self.statuses:
            raise IllegalStateTransitionError(
                f"Invalid {self.entity_name} status '{status}'",
                allowed=self.statuses
            )

    # =========================================================================
    # READ
    # =========================================================================

    async def find_by_id(self, tenant_id: str, entity_id: str) -> Dict[str, Any]:
        return self.to_detail(await self.get_raw(tenant_id, entity_id))

    async def find_by_identifier(self, tenant_id: str, identifier: str) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one({"tenant_id": tenant_id, self.identifier_field: identifier})
        return self.to_detail(doc) if doc else None

    def build_list_query(
        self,
        tenant_id: str,
        status: Optional[str] = None,
        search: Optional[str] = None,
        date_from=None,
        date_to=None,
        extra: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {"tenant_id": tenant_id}
        if status:
            query["status"] = status
        if search and self.search_fields:
            pattern = re.escape(search.strip())
            query["$or"] = [
                {field: {"$regex": pattern, "$options": "i"}} for field in self.search_fields
            ]
        date_range = {}
        start = parse_date(date_from)
        end = parse_date(date_to)
        if start:
            date_range["$gte"] = start
        if end:
            date_range["$lte"] = end
        if date_range:
            query[self.date_field] = date_range
        if extra:
            query.update(extra)
        return query

    async def list(
        self,
        tenant_id: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        status: Optional[str] = None,
        search: Optional[str] = None,
        date_from=None,
        date_to=None,
        extra: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Paginated, tenant-scoped listing with list-view projection"""
        page = max(1, int(page or 1))
        limit = max(1, min(MAX_PAGE_SIZE, int(limit or DEFAULT_PAGE_SIZE)))
        query = self.build_list_query(tenant_id, status, search, date_from, date_to, extra)

        total = await self.collection.count_documents(query)
        projection = {field: 1 for field in self.list_fields} if self.list_fields else None
        cursor = (
            self.collection.find(query, projection)
            .sort(self.date_field, -1)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        pages = math.ceil(total / limit) if total else 0

        return {
            "items": [self.to_list_item(doc) for doc in docs],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": pages,
                "has_more": page < pages
            }
        }

    async def cached_read(
        self,
        tenant_id: str,
        namespace: str,
        compute: Callable[[], Awaitable[Dict[str, Any]]],
        shape_parts: tuple = (),
        date_to=None
    ) -> Dict[str, Any]:
        """Serve an aggregate read through the tenant cache; result carries `_cached`"""
        if self.cache is None:
            return dict(await compute(), _cached=False)
        return await self.cache.get_or_compute(
            tenant_id, f"{self.collection_name}:{namespace}", TenantReadCache.make_shape(*shape_parts), compute,
            self.cache.ttl_for_range(date_to)
        )

    async def get_optimized_list(
        self,
        tenant_id: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        status: Optional[str] = None,
        search: Optional[str] = None,
        date_from=None,
        date_to=None
    ) -> Dict[str, Any]:
        """Cached list-view page; any write for the tenant drops it"""
        async def compute():
            return await self.list(tenant_id, page, limit, status, search, date_from, date_to)

        return await self.cached_read(
            tenant_id, "list", compute, (page, limit, status, search, date_from, date_to), date_to
        )

    # =========================================================================
    # CREATE
    # =========================================================================

    async def generate_identifier(self, tenant_id: str, doc: Dict[str, Any]) -> str:
        return await self.allocator.allocate_identifier(
            tenant_id, self.sequence_name, self.identifier_prefix, self.identifier_width
        )

    async def _prepare_create(self, tenant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return payload

    async def insert_with_identifier(self, tenant_id: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert, allocating a fresh identifier on every collision.

        A caller-supplied identifier fails immediately with a terminal
        DuplicateIdentifierError. Generated identifiers are retried up to
        MAX_ATTEMPTS with a random 0..MAX_BACKOFF_MS pause between attempts.
        """
        field = self.identifier_field
        supplied = bool(field and doc.get(field)) or not self.sequence_name
        identifier = doc.get(field) if field else None

        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            if not supplied:
                identifier = await self.generate_identifier(tenant_id, doc)
                doc[field] = identifier

            try:
                result = await self.collection.insert_one(doc)
                doc["_id"] = result.inserted_id
                if attempt > 1:
                    logger.info(f"[REPO] {self.entity_name} {identifier} created on attempt {attempt}")
                return doc
            except DuplicateKeyError:
                # insert_one stamps _id on the dict before sending
                doc.pop("_id", None)
                if supplied:
                    raise DuplicateIdentifierError(self.entity_name, str(identifier), retryable=False)

                logger.warning(
                    f"[REPO] {self.entity_name} identifier collision on {identifier} "
                    f"for tenant:{tenant_id} (attempt {attempt}/{self.MAX_ATTEMPTS})"
                )
                if attempt < self.MAX_ATTEMPTS:
                    await asyncio.sleep(random.uniform(0, self.MAX_BACKOFF_MS) / 1000)

        logger.error(
            f"[REPO] {self.entity_name} creation exhausted {self.MAX_ATTEMPTS} attempts "
            f"for tenant:{tenant_id}"
        )
        raise IdentifierCollisionError(self.entity_name, self.MAX_ATTEMPTS, str(identifier or ""))

    async def create(self, tenant_id: str, data: Any) -> Dict[str, Any]:
        payload = validate_payload(self.create_model, data)
        self._validate_status(payload.get("status"))

        doc = await self._prepare_create(tenant_id, payload)
        now = datetime.utcnow()
        doc["tenant_id"] = tenant_id
        doc.setdefault("created_at", now)
        doc["updated_at"] = now

        created = await self.insert_with_identifier(tenant_id, doc)
        label = created.get(self.identifier_field) if self.identifier_field else created["_id"]
        logger.info(f"[REPO] Created {self.entity_name} {label} for tenant:{tenant_id}")

        await self._count_created(tenant_id, created)
        await self._after_create(tenant_id, created)
        await self._after_write(tenant_id, "create", self.counter_for(created))
        return self.to_detail(created)

    def counter_for(self, doc: Dict[str, Any]) -> Optional[str]:
        return self.counter_name

    async def _count_created(self, tenant_id: str, doc: Dict[str, Any]):
        counter = self.counter_for(doc)
        if counter:
            await self.counters.run(self.counters.safe_increment(tenant_id, counter, 1))

    async def _after_create(self, tenant_id: str, doc: Dict[str, Any]):
        pass

    # =========================================================================
    # UPDATE
    # =========================================================================

    async def _prepare_update(
        self,
        tenant_id: str,
        existing: Dict[str, Any],
        patch: Dict[str, Any]
    ) -> Dict[str, Any]:
        return patch

    async def apply_changes(
        self,
        tenant_id: str,
        entity_id: str,
        changes: Dict[str, Any],
        extra_ops: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Tenant-guarded atomic update returning the new document"""
        update: Dict[str, Any] = {"$set": dict(changes, updated_at=datetime.utcnow())}
        if extra_ops:
            update.update(extra_ops)
        updated = await self.collection.find_one_and_update(
            self._scoped(tenant_id, entity_id),
            update,
            return_document=ReturnDocument.AFTER
        )
        if not updated:
            raise NotFoundError(self.entity_name, entity_id)
        return updated

    async def push_and_recompute(
        self,
        tenant_id: str,
        entity_id: str,
        field: str,
        entry: Dict[str, Any],
        recompute: Callable[[Dict[str, Any]], Dict[str, Any]]
    ) -> Dict[str, Any]:
        """
        Append to an array field, then store values derived from it.

        The derived write only lands while the array still has the length
        it was computed from; a concurrent append forces a re-read.
        """
        current = await self.apply_changes(tenant_id, entity_id, {}, {"$push": {field: entry}})
        scope = self._scoped(tenant_id, entity_id)

        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            size = len(current.get(field) or [])
            updated = await self.collection.find_one_and_update(
                dict(scope, **{field: {"$size": size}}),
                {"$set": dict(recompute(current), updated_at=datetime.utcnow())},
                return_document=ReturnDocument.AFTER
            )
            if updated:
                return updated

            logger.warning(
                f"[REPO] {self.entity_name} {entity_id} {field} changed concurrently "
                f"(attempt {attempt}/{self.MAX_ATTEMPTS})"
            )
            current = await self.get_raw(tenant_id, entity_id)

        raise DependencyUnavailableError(
            f"{self.entity_name} {entity_id} kept changing concurrently; retry the operation"
        )

    async def update(self, tenant_id: str, entity_id: str, data: Any) -> Dict[str, Any]:
        patch = validate_payload(self.update_model, data, partial=True)
        self._validate_status(patch.get("status"))

        existing = await self.get_raw(tenant_id, entity_id)
        changes = await self._prepare_update(tenant_id, existing, patch)

        try:
            updated = await self.apply_changes(tenant_id, entity_id, changes)
        except DuplicateKeyError:
            raise DuplicateIdentifierError(
                self.entity_name,
                str(changes.get(self.identifier_field, "")),
                retryable=False
            )

        await self._after_update(tenant_id, existing, updated)
        await self._after_write(tenant_id, "update")
        return self.to_detail(updated)

    async def _after_update(self, tenant_id: str, before: Dict[str, Any], after: Dict[str, Any]):
        pass

    # =========================================================================
    # DELETE
    # =========================================================================

    async def delete(self, tenant_id: str, entity_id: str) -> Dict[str, Any]:
        """Delete one record; every delete path funnels through here"""
        existing = await self.get_raw(tenant_id, entity_id)
        await self._check_delete_allowed(existing)

        deleted = await self.collection.find_one_and_delete(self._scoped(tenant_id, entity_id))
        if not deleted:
            raise NotFoundError(self.entity_name, entity_id)

        logger.info(f"[REPO] Deleted {self.entity_name} {entity_id} for tenant:{tenant_id}")
        counter = self.counter_for(deleted)
        if counter:
            await self.counters.run(self.counters.safe_decrement(tenant_id, counter, 1))
        await self._after_delete(tenant_id, deleted)
        await self._after_write(tenant_id, "delete", counter)
        return self.to_detail(deleted)

    async def _check_delete_allowed(self, doc: Dict[str, Any]):
        pass

    async def _after_delete(self, tenant_id: str, doc: Dict[str, Any]):
        pass

    async def bulk_delete(self, tenant_id: str, entity_ids: List[str]) -> Dict[str, Any]:
        """Delete many ids, one counter decrement per actually deleted record"""
        deleted, not_found = [], []
        for entity_id in entity_ids:
            try:
                await self.delete(tenant_id, entity_id)
                deleted.append(entity_id)
            except NotFoundError:
                not_found.append(entity_id)
        return {"deleted": deleted, "deleted_count": len(deleted), "not_found": not_found}

    # =========================================================================
    # POST-WRITE
    # =========================================================================

    async def _after_write(self, tenant_id: str, reason: str, counter: Optional[str] = None):
        """Invalidate cached aggregates and emit the out-of-band event"""
        if self.cache is not None:
            self.cache.safe_invalidate(tenant_id)
        if self.notifier is not None:
            await self.notifier.emit_dashboard_update(
                tenant_id,
                [counter] if counter else [],
                f"{self.collection_name}:{reason}"
            )

    async def sum_field(self, tenant_id: str, field: str, date_from=None, date_to=None,
                        extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """$group total of a stored field plus a count, scoped by tenant and date range"""
        match = self.build_list_query(tenant_id, date_from=date_from, date_to=date_to, extra=extra)
        pipeline = [
            {"$match": match},
            {"$group": {"_id": None, "total": {"$sum": f"${field}"}, "count": {"$sum": 1}}}
        ]
        result = await self.collection.aggregate(pipeline).to_list(length=1)
        if not result:
            return {"total": 0.0, "count": 0}
        return {"total": round(float(result[0].get("total") or 0), 2), "count": result[0].get("count", 0)}
