from fastapi import FastAPI, APIRouter, HTTPException, Request, status, Depends
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
import logging
from datetime import datetime

from models import RegisterRequest, LoginRequest, RefreshTokenRequest, TokenResponse
from auth import (
    hash_password, verify_password, create_access_token, create_refresh_token,
    decode_refresh_token
)
from business_routes import (
    business_router, client, db, get_tenant_user, permission_checker, services,
    register_exception_handlers
)
from core.mongo_utils import to_object_id

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create the main app
app = FastAPI(
    title="Tile Business Management API",
    version="1.0.0",
    description="Multi-tenant quotations, invoices, purchase orders and job costing"
)

# Create router with /api prefix
api_router = APIRouter(prefix="/api")


def user_response(user: dict) -> dict:
    return {
        "user_id": str(user["_id"]),
        "tenant_id": user["tenant_id"],
        "name": user["name"],
        "email": user["email"],
        "role": user["role"],
        "active_status": user.get("active_status", True)
    }


async def issue_tokens(user: dict) -> TokenResponse:
    """Access token plus a stored (hashed) refresh token for rotation"""
    user_id = str(user["_id"])
    access_token = create_access_token(user_id, user["tenant_id"], user["role"])
    refresh_token = create_refresh_token(user_id)

    refresh_payload = decode_refresh_token(refresh_token)
    await db.refresh_tokens.insert_one({
        "jti": refresh_payload["jti"],
        "user_id": user_id,
        "token_hash": hash_password(refresh_token),
        "expires_at": datetime.utcfromtimestamp(refresh_payload["exp"]),
        "is_revoked": False,
        "created_at": datetime.utcnow()
    })

    return TokenResponse(access_token=access_token, refresh_token=refresh_token, user=user_response(user))


# ============================================
# AUTHENTICATION ENDPOINTS
# ============================================

@api_router.post("/auth/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(data: RegisterRequest):
    """
    Register a company and its first user.
    The registering user becomes the tenant's Admin.
    """
    if await db.users.find_one({"email": data.email.lower()}):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered"
        )

    tenant = await services.tenants.create_tenant({"company_name": data.company_name, "email": data.email})

    now = datetime.utcnow()
    user = {
        "tenant_id": tenant["id"],
        "name": data.name,
        "email": data.email.lower(),
        "hashed_password": hash_password(data.password),
        "role": "Admin",
        "active_status": True,
        "created_at": now,
        "updated_at": now
    }
    result = await db.users.insert_one(user)
    user["_id"] = result.inserted_id
    logger.info(f"Registered tenant:{tenant['id']} with admin user:{result.inserted_id}")

    return await issue_tokens(user)


@api_router.post("/auth/login", response_model=TokenResponse)
async def login(login_data: LoginRequest):
    user = await db.users.find_one({"email": login_data.email.lower()})

    if not user or not verify_password(login_data.password, user["hashed_password"]):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )

    if not user.get("active_status", False):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive"
        )

    return await issue_tokens(user)


@api_router.post("/auth/refresh", response_model=TokenResponse)
async def refresh_access_token(request: RefreshTokenRequest):
    """
    Refresh access token using refresh token.

    Token Rotation: Old refresh token is revoked, new one is issued.
    """
    payload = decode_refresh_token(request.refresh_token)
    jti = payload["jti"]
    user_id = payload["user_id"]

    token_doc = await db.refresh_tokens.find_one({"jti": jti, "user_id": user_id, "is_revoked": False})
    if not token_doc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token is invalid or has been revoked"
        )

    oid = to_object_id(user_id)
    user = await db.users.find_one({"_id": oid}) if oid else None
    if not user or not user.get("active_status", False):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive"
        )

    await db.refresh_tokens.update_one({"jti": jti}, {"$set": {"is_revoked": True}})
    return await issue_tokens(user)


@api_router.post("/auth/logout")
async def logout(request: RefreshTokenRequest):
    payload = decode_refresh_token(request.refresh_token)
    await db.refresh_tokens.update_one({"jti": payload["jti"]}, {"$set": {"is_revoked": True}})
    return {"message": "Logged out successfully"}


@api_router.get("/auth/me")
async def get_me(user: dict = Depends(get_tenant_user)):
    return user


# ============================================
# MAINTENANCE
# ============================================

@api_router.post("/maintenance/fix-negative-counters")
async def fix_negative_counters(user: dict = Depends(get_tenant_user)):
    await permission_checker.check_admin_role(user)
    return await services.reconciliation.fix_negative_counters()


@api_router.get("/health")
async def health():
    return {"status": "ok", "timestamp": datetime.utcnow().isoformat()}


# ============================================
# APP WIRING
# ============================================

app.include_router(api_router)
app.include_router(business_router)
register_exception_handlers(app)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    """Log with tenant context, return a generic 500"""
    tenant = getattr(request.state, "tenant_id", "unknown")
    logger.error(f"Unhandled error on {request.method} {request.url.path} (tenant:{tenant})", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"kind": "INTERNAL_ERROR", "detail": "Internal server error"}
    )


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def create_indexes():
    await services.ensure_indexes()


@app.on_event("shutdown")
async def shutdown_db_client():
    await services.shutdown()
    client.close()
