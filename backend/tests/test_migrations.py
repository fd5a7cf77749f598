"""
Migration scripts run against the in-process database
"""
import importlib.util
from pathlib import Path

from bson import ObjectId

from core.counter_sync import TOTAL_SUPPLIERS

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"


def load_migration(name):
    spec = importlib.util.spec_from_file_location(name, MIGRATIONS_DIR / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestTenantScopedIndexes:

    async def test_legacy_global_index_is_replaced(self, db):
        await db.suppliers.create_index("name", unique=True)
        migration = load_migration("001_tenant_scoped_indexes")

        result = await migration.upgrade(db)

        assert "suppliers.name_1" in result["dropped"]
        indexes = await db.suppliers.index_information()
        assert "name_1" not in indexes
        assert "uniq_tenant_name" in indexes
        assert (await db.migrations.find_one({"migration_id": migration.MIGRATION_ID}))["status"] == "success"


class TestFixNegativeCounters:

    async def test_dry_run_changes_nothing(self, db, services, tenant_id):
        await services.suppliers.create(tenant_id, {"name": "Kajaria"})
        await db.tenants.update_one({"_id": ObjectId(tenant_id)}, {"$set": {f"counters.{TOTAL_SUPPLIERS}": -3}})
        migration = load_migration("002_fix_negative_counters")

        result = await migration.upgrade(db, apply=False)

        assert result["reconciled"] == 1
        assert (await services.tenants.get_counters(tenant_id))[TOTAL_SUPPLIERS] == -3
        assert await db.migrations.count_documents({}) == 0

    async def test_apply_resets_and_reconciles(self, db, services, tenant_id):
        await services.suppliers.create(tenant_id, {"name": "Kajaria"})
        await db.tenants.update_one({"_id": ObjectId(tenant_id)}, {"$set": {f"counters.{TOTAL_SUPPLIERS}": -3}})
        migration = load_migration("002_fix_negative_counters")

        result = await migration.upgrade(db)

        assert result["negatives"]["fields_fixed"] == 1
        assert (await services.tenants.get_counters(tenant_id))[TOTAL_SUPPLIERS] == 1
