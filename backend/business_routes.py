"""
BUSINESS API ROUTES

Implements:
- Section 1: Tenant settings & counters
- Section 2: Generic CRUD for every business entity
- Section 3: Entity-specific operations (conversion, payments, status,
  delivery verification, stored files, expenses, bulk import)
- Section 4: Dashboard summary & counter maintenance

Business errors raised by the repositories are mapped to JSON responses
by the handler registered in `register_exception_handlers`.
"""

from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorClient
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging
import os

from dotenv import load_dotenv
load_dotenv(Path(__file__).parent / '.env')

from auth import get_current_user
from permissions import PermissionChecker
from notification_service import NotificationService
from core.cache_service import TenantReadCache
from core.errors import BusinessError
from core.service_registry import BusinessServices

logger = logging.getLogger(__name__)

# Router
business_router = APIRouter(prefix="/api", tags=["Business"])

# MongoDB
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'tile_business')

client = AsyncIOMotorClient(mongo_url)
db = client[db_name]

# Services
permission_checker = PermissionChecker(db)
notification_service = NotificationService(db)
services = BusinessServices(
    db,
    cache=TenantReadCache(default_ttl=int(os.environ.get('CACHE_DEFAULT_TTL', '300'))),
    deferred_counters=os.environ.get('COUNTER_SYNC_DEFERRED', 'true').lower() != 'false',
    notifier=notification_service
)


async def get_tenant_user(request: Request, current_user: dict = Depends(get_current_user)) -> dict:
    user = await permission_checker.get_authenticated_user(current_user)
    # read by the 500 handler for log context
    request.state.tenant_id = user["tenant_id"]
    return user


# =============================================================================
# ERROR MAPPING
# =============================================================================

async def business_error_handler(request: Request, exc: BusinessError):
    if exc.status_code >= 500:
        logger.error(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(BusinessError, business_error_handler)


# =============================================================================
# SECTION 1: TENANT
# =============================================================================

@business_router.get("/tenant")
async def get_tenant(user: dict = Depends(get_tenant_user)):
    return await services.tenants.get_tenant(user["tenant_id"])


@business_router.get("/tenant/counters")
async def get_tenant_counters(user: dict = Depends(get_tenant_user)):
    return await services.tenants.get_counters(user["tenant_id"])


@business_router.put("/tenant/document-settings")
async def update_document_settings(data: Dict[str, Any] = Body(...), user: dict = Depends(get_tenant_user)):
    await permission_checker.check_admin_role(user)
    return await services.tenants.update_document_settings(user["tenant_id"], data)


# =============================================================================
# SECTION 2: GENERIC CRUD
# =============================================================================

def register_crud(path: str, repository):
    """List / stats / get / create / update / delete / bulk-delete for one entity"""

    @business_router.get(f"/{path}", name=f"list_{path}")
    async def list_entities(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        status: Optional[str] = None,
        search: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        user: dict = Depends(get_tenant_user)
    ):
        return await repository.get_optimized_list(
            user["tenant_id"], page=page, limit=limit, status=status,
            search=search, date_from=date_from, date_to=date_to
        )

    if hasattr(repository, "get_stats"):
        @business_router.get(f"/{path}/stats", name=f"stats_{path}")
        async def entity_stats(
            date_from: Optional[str] = None,
            date_to: Optional[str] = None,
            user: dict = Depends(get_tenant_user)
        ):
            return await repository.get_stats(user["tenant_id"], date_from, date_to)

    @business_router.get(f"/{path}/{{entity_id}}", name=f"get_{path}")
    async def get_entity(entity_id: str, user: dict = Depends(get_tenant_user)):
        return await repository.find_by_id(user["tenant_id"], entity_id)

    @business_router.post(f"/{path}", status_code=201, name=f"create_{path}")
    async def create_entity(data: Dict[str, Any] = Body(...), user: dict = Depends(get_tenant_user)):
        return await repository.create(user["tenant_id"], data)

    @business_router.put(f"/{path}/{{entity_id}}", name=f"update_{path}")
    async def update_entity(entity_id: str, data: Dict[str, Any] = Body(...), user: dict = Depends(get_tenant_user)):
        return await repository.update(user["tenant_id"], entity_id, data)

    @business_router.delete(f"/{path}/{{entity_id}}", name=f"delete_{path}")
    async def delete_entity(entity_id: str, user: dict = Depends(get_tenant_user)):
        deleted = await repository.delete(user["tenant_id"], entity_id)
        return {"message": f"{repository.entity_name} deleted", "id": deleted["id"]}

    @business_router.post(f"/{path}/bulk-delete", name=f"bulk_delete_{path}")
    async def bulk_delete_entities(ids: List[str] = Body(..., embed=True), user: dict = Depends(get_tenant_user)):
        return await repository.bulk_delete(user["tenant_id"], ids)


# =============================================================================
# SECTION 3: ENTITY-SPECIFIC OPERATIONS
# =============================================================================

@business_router.post("/quotations/{quotation_id}/convert")
async def convert_quotation(quotation_id: str, data: Dict[str, Any] = Body(default={}),
                            user: dict = Depends(get_tenant_user)):
    return await services.quotations.convert_to_invoice(user["tenant_id"], quotation_id, data)


@business_router.post("/quotations/{document_id}/payments")
async def add_invoice_payment(document_id: str, data: Dict[str, Any] = Body(...),
                              user: dict = Depends(get_tenant_user)):
    return await services.quotations.add_payment(user["tenant_id"], document_id, data)


@business_router.patch("/purchase-orders/{po_id}/status")
async def update_purchase_order_status(po_id: str, data: Dict[str, Any] = Body(...),
                                       user: dict = Depends(get_tenant_user)):
    return await services.purchase_orders.update_status(user["tenant_id"], po_id, data)


@business_router.put("/purchase-orders/{po_id}/delivery-verification")
async def update_delivery_verification(po_id: str, items: List[Dict[str, Any]] = Body(..., embed=True),
                                       user: dict = Depends(get_tenant_user)):
    return await services.purchase_orders.update_delivery_verification(user["tenant_id"], po_id, items)


@business_router.put("/purchase-orders/{po_id}/image")
async def update_purchase_order_image(po_id: str, data: Dict[str, Any] = Body(...),
                                      user: dict = Depends(get_tenant_user)):
    return await services.purchase_orders.update_image(user["tenant_id"], po_id, data)


@business_router.put("/purchase-orders/{po_id}/invoice-image")
async def update_purchase_order_invoice_image(po_id: str, data: Dict[str, Any] = Body(...),
                                              user: dict = Depends(get_tenant_user)):
    return await services.purchase_orders.update_invoice_image(user["tenant_id"], po_id, data)


@business_router.post("/material-sales/{sale_id}/payments")
async def add_material_sale_payment(sale_id: str, data: Dict[str, Any] = Body(...),
                                    user: dict = Depends(get_tenant_user)):
    return await services.material_sales.add_payment(user["tenant_id"], sale_id, data)


@business_router.patch("/material-sales/{sale_id}/status")
async def update_material_sale_status(sale_id: str, data: Dict[str, Any] = Body(...),
                                      user: dict = Depends(get_tenant_user)):
    return await services.material_sales.update_status(user["tenant_id"], sale_id, data)


@business_router.get("/site-visits/grouped")
async def site_visits_grouped(
    search: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    user: dict = Depends(get_tenant_user)
):
    return await services.site_visits.get_grouped_by_customer(user["tenant_id"], search, date_from, date_to)


@business_router.patch("/site-visits/{visit_id}/status")
async def update_site_visit_status(visit_id: str, data: Dict[str, Any] = Body(...),
                                   user: dict = Depends(get_tenant_user)):
    return await services.site_visits.update_status(user["tenant_id"], visit_id, data)


@business_router.put("/job-costs/upsert/{id_or_document_id}")
async def upsert_job_cost(id_or_document_id: str, data: Dict[str, Any] = Body(...),
                          user: dict = Depends(get_tenant_user)):
    return await services.job_costs.upsert(user["tenant_id"], id_or_document_id, data)


@business_router.post("/job-costs/{job_cost_id}/expenses")
async def add_job_cost_expense(job_cost_id: str, data: Dict[str, Any] = Body(...),
                               user: dict = Depends(get_tenant_user)):
    return await services.job_costs.add_other_expense(user["tenant_id"], job_cost_id, data)


@business_router.put("/job-costs/{job_cost_id}/expenses/{expense_id}")
async def update_job_cost_expense(job_cost_id: str, expense_id: str, data: Dict[str, Any] = Body(...),
                                  user: dict = Depends(get_tenant_user)):
    return await services.job_costs.update_other_expense(user["tenant_id"], job_cost_id, expense_id, data)


@business_router.delete("/job-costs/{job_cost_id}/expenses/{expense_id}")
async def delete_job_cost_expense(job_cost_id: str, expense_id: str, user: dict = Depends(get_tenant_user)):
    return await services.job_costs.delete_other_expense(user["tenant_id"], job_cost_id, expense_id)


@business_router.post("/job-costs/{job_cost_id}/complete")
async def complete_job_cost(job_cost_id: str, user: dict = Depends(get_tenant_user)):
    return await services.job_costs.complete(user["tenant_id"], job_cost_id)


@business_router.post("/job-costs/{job_cost_id}/reopen")
async def reopen_job_cost(job_cost_id: str, user: dict = Depends(get_tenant_user)):
    return await services.job_costs.reopen(user["tenant_id"], job_cost_id)


@business_router.post("/job-costs/{job_cost_id}/recalculate")
async def recalculate_job_cost(job_cost_id: str, user: dict = Depends(get_tenant_user)):
    updated = await services.job_costs.recalculate(user["tenant_id"], job_cost_id)
    return services.job_costs.to_detail(updated)


@business_router.post("/suppliers/bulk")
async def bulk_create_suppliers(data: Dict[str, Any] = Body(...), user: dict = Depends(get_tenant_user)):
    return await services.suppliers.bulk_create(user["tenant_id"], data)


@business_router.get("/customers/search")
async def search_customers(phone: str = Query(..., min_length=1), user: dict = Depends(get_tenant_user)):
    return {"items": await services.customers.search_by_phone(user["tenant_id"], phone)}


@business_router.post("/categories/{category_id}/items")
async def add_category_item(category_id: str, data: Dict[str, Any] = Body(...),
                            user: dict = Depends(get_tenant_user)):
    return await services.categories.add_item(user["tenant_id"], category_id, data)


# =============================================================================
# SECTION 4: DASHBOARD & MAINTENANCE
# =============================================================================

@business_router.get("/dashboard/summary")
async def dashboard_summary(
    start: Optional[str] = None,
    end: Optional[str] = None,
    user: dict = Depends(get_tenant_user)
):
    return await services.dashboard.get_summary(user["tenant_id"], start, end)


@business_router.get("/dashboard/events")
async def dashboard_events(limit: int = Query(50, ge=1, le=200), user: dict = Depends(get_tenant_user)):
    return {"events": await notification_service.get_recent_events(user["tenant_id"], limit)}


@business_router.post("/maintenance/reconcile-counters")
async def reconcile_counters(apply: bool = False, user: dict = Depends(get_tenant_user)):
    await permission_checker.check_admin_role(user)
    report = await services.reconciliation.run(user["tenant_id"], apply=apply)
    if report["applied"]:
        services.cache.safe_invalidate(user["tenant_id"])
    return report


# after the specific routes so they win over /{entity_id}
register_crud("quotations", services.quotations)
register_crud("purchase-orders", services.purchase_orders)
register_crud("material-sales", services.material_sales)
register_crud("job-costs", services.job_costs)
register_crud("site-visits", services.site_visits)
register_crud("suppliers", services.suppliers)
register_crud("customers", services.customers)
register_crud("categories", services.categories)
