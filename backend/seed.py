"""
Seed script for the tile business backend.

Creates:
- 1 Tenant (Demo Tiles) with all counters at 0
- 1 Admin user (credentials: admin@example.com / admin123)
- 2 Suppliers, 2 Categories (through the repositories, so counters move)
- All tenant-scoped indexes
"""

import asyncio
from motor.motor_asyncio import AsyncIOMotorClient
from datetime import datetime
import os
from pathlib import Path
from dotenv import load_dotenv
import sys

# Add parent directory to path for imports
sys.path.append(str(Path(__file__).parent))

from auth import hash_password
from core.service_registry import BusinessServices

# Load environment
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB connection
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'tile_business')

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin123"

SUPPLIERS = [
    {"name": "Kajaria Distributors", "phone": "9800000001", "contact_person": "R. Mehta"},
    {"name": "Somany Wholesale", "phone": "9800000002", "contact_person": "A. Khan"},
]

CATEGORIES = [
    {"name": "Floor Tiles", "items": [{"item_name": "Vitrified 600x600", "sqft_per_unit": 15.5}]},
    {"name": "Wall Tiles", "items": [{"item_name": "Ceramic 300x450", "sqft_per_unit": 10.9}]},
]


async def seed_database():
    """Seed the database with initial data"""

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]
    services = BusinessServices(db, deferred_counters=False)

    print("🌱 Starting database seeding...")

    try:
        print("📇 Creating indexes...")
        await services.ensure_indexes()
        await db.users.create_index("email", unique=True)
        print("   ✅ Indexes created")

        # ============================================
        # 1. CREATE TENANT
        # ============================================
        print("🏢 Creating tenant...")

        existing_tenant = await db.tenants.find_one({"email": ADMIN_EMAIL})
        if existing_tenant:
            print("   ⚠️  Tenant already exists. Skipping...")
            tenant_id = str(existing_tenant["_id"])
        else:
            tenant = await services.tenants.create_tenant({"company_name": "Demo Tiles", "email": ADMIN_EMAIL})
            tenant_id = tenant["id"]
            print(f"   ✅ Tenant created: {tenant_id}")

        # ============================================
        # 2. CREATE ADMIN USER
        # ============================================
        print("👤 Creating admin user...")

        if await db.users.find_one({"email": ADMIN_EMAIL}):
            print("   ⚠️  Admin user already exists. Skipping...")
        else:
            await db.users.insert_one({
                "tenant_id": tenant_id,
                "name": "System Administrator",
                "email": ADMIN_EMAIL,
                "hashed_password": hash_password(ADMIN_PASSWORD),
                "role": "Admin",
                "active_status": True,
                "created_at": datetime.utcnow(),
                "updated_at": datetime.utcnow()
            })
            print("   ✅ Admin user created")
            print(f"      📧 Email: {ADMIN_EMAIL}")
            print(f"      🔑 Password: {ADMIN_PASSWORD}")

        # ============================================
        # 3. SUPPLIERS & CATEGORIES
        # ============================================
        print("🚚 Creating suppliers...")
        report = await services.suppliers.bulk_create(tenant_id, {"suppliers": SUPPLIERS, "skip_duplicates": True})
        print(f"   ✅ {report['created_count']} created, {report['duplicate_count']} already present")

        print("🏷️  Creating categories...")
        for category in CATEGORIES:
            if await services.categories.find_by_identifier(tenant_id, category["name"]):
                print(f"   ⚠️  Category {category['name']} already exists. Skipping...")
                continue
            await services.categories.create(tenant_id, category)
            print(f"   ✅ Category created: {category['name']}")

        # ============================================
        # SUMMARY
        # ============================================
        counters = await services.tenants.get_counters(tenant_id)
        print("\n" + "="*60)
        print("✨ DATABASE SEEDING COMPLETE ✨")
        print("="*60)
        print(f"\n🏢 Tenant ID: {tenant_id}")
        print(f"📊 Counters: {counters}")
        print("\n📖 API Documentation: http://localhost:8001/docs")
        print("="*60)

    except Exception as e:
        print(f"\n❌ Error during seeding: {str(e)}")
        raise
    finally:
        await services.shutdown()
        client.close()


if __name__ == "__main__":
    asyncio.run(seed_database())
