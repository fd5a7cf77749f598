"""
Shared fixtures: an in-process motor-compatible database and one fully
wired set of business services per test.
"""
import pytest
from mongomock_motor import AsyncMongoMockClient

from core.file_storage import LocalFileStorage
from core.service_registry import BusinessServices
from notification_service import NotificationService


@pytest.fixture
def db():
    client = AsyncMongoMockClient()
    return client["tile_business_test"]


@pytest.fixture
def upload_root(tmp_path):
    root = tmp_path / "uploads"
    root.mkdir()
    return root


@pytest.fixture
async def services(db, upload_root):
    """Counters awaited inline so assertions see them immediately"""
    built = BusinessServices(
        db,
        deferred_counters=False,
        notifier=NotificationService(db),
        file_storage=LocalFileStorage(str(upload_root))
    )
    await built.ensure_indexes()
    yield built
    await built.shutdown()


@pytest.fixture
async def tenant_id(services):
    tenant = await services.tenants.create_tenant({"company_name": "Acme Tiles", "email": "owner@acmetiles.com"})
    return tenant["id"]


@pytest.fixture
async def other_tenant_id(services):
    tenant = await services.tenants.create_tenant({"company_name": "Beta Floors", "email": "owner@betafloors.com"})
    return tenant["id"]


@pytest.fixture
def no_backoff(monkeypatch, services):
    for repository in services.repositories:
        monkeypatch.setattr(repository, "MAX_BACKOFF_MS", 0)
