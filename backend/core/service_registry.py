"""
SERVICE REGISTRY

Builds one instance of every consistency-engine component around a single
database handle. The API module and the tests both wire through here so
collaborators are always shared (one cache, one counter scheduler).
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from typing import Optional
import logging

from core.atomic_numbering import TenantSequenceAllocator
from core.cache_service import TenantReadCache
from core.category_repository import CategoryRepository
from core.counter_reconciliation import CounterReconciliationJob
from core.counter_sync import CounterSynchronizer
from core.customer_repository import CustomerRepository
from core.dashboard_service import DashboardService
from core.file_storage import LocalFileStorage
from core.job_cost_propagator import PurchaseOrderJobCostPropagator
from core.job_cost_repository import JobCostRepository
from core.material_sale_repository import MaterialSaleRepository
from core.purchase_order_repository import PurchaseOrderRepository
from core.quotation_repository import QuotationRepository
from core.site_visit_repository import SiteVisitRepository
from core.supplier_repository import SupplierRepository
from core.tenant_repository import TenantRepository

logger = logging.getLogger(__name__)


class BusinessServices:

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        cache: Optional[TenantReadCache] = None,
        deferred_counters: bool = True,
        notifier=None,
        file_storage: Optional[LocalFileStorage] = None
    ):
        self.db = db
        self.cache = cache or TenantReadCache()
        self.allocator = TenantSequenceAllocator(db)
        self.counters = CounterSynchronizer(db, deferred=deferred_counters)
        self.notifier = notifier
        self.file_storage = file_storage or LocalFileStorage()

        shared = dict(cache=self.cache, notifier=notifier)
        self.tenants = TenantRepository(db)
        self.job_costs = JobCostRepository(db, self.allocator, self.counters, **shared)
        self.propagator = PurchaseOrderJobCostPropagator(db, self.job_costs, self.cache)
        self.quotations = QuotationRepository(db, self.allocator, self.counters, job_costs=self.job_costs, **shared)
        self.purchase_orders = PurchaseOrderRepository(
            db, self.allocator, self.counters,
            propagator=self.propagator, file_storage=self.file_storage, **shared
        )
        self.material_sales = MaterialSaleRepository(db, self.allocator, self.counters, **shared)
        self.site_visits = SiteVisitRepository(db, self.allocator, self.counters, **shared)
        self.suppliers = SupplierRepository(db, self.allocator, self.counters, **shared)
        self.customers = CustomerRepository(db, self.allocator, self.counters, **shared)
        self.categories = CategoryRepository(db, self.allocator, self.counters, **shared)

        self.reconciliation = CounterReconciliationJob(db)
        self.dashboard = DashboardService(db, self.cache, {
            "quotations": self.quotations,
            "purchase_orders": self.purchase_orders,
            "material_sales": self.material_sales,
            "job_costs": self.job_costs,
            "site_visits": self.site_visits,
        }, tenants=self.tenants)

    @property
    def repositories(self):
        return [
            self.quotations, self.purchase_orders, self.material_sales, self.job_costs,
            self.site_visits, self.suppliers, self.customers, self.categories,
        ]

    async def ensure_indexes(self):
        await self.tenants.ensure_indexes()
        await self.allocator.create_unique_constraints()
        for repository in self.repositories:
            await repository.ensure_indexes()
        logger.info("[REPO] All indexes ensured")

    async def shutdown(self, timeout: Optional[float] = 5.0):
        await self.counters.drain(timeout)
