from fastapi import FastAPI, APIRouter, HTTPException, status, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
from dotenv import load_dotenv
from pathlib import Path
from datetime import datetime
import hashlib
import traceback
import os
import logging

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from models import UserCreate, UserResponse, UserRole, Token, LoginRequest, RefreshTokenRequest
from auth import (
    hash_password, verify_password, create_access_token, create_refresh_token,
    decode_refresh_token, ACCESS_TOKEN_EXPIRE_MINUTES
)
from database import get_db, ensure_indexes, close_client
from dependencies import get_audit_service
from audit_service import AuditService
from ledger import LedgerError
from user_routes import user_router, to_user_response
from project_routes import project_router
from party_routes import party_router
from transaction_routes import transaction_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Project Ledger API",
    version="1.0.0",
    description="Project finance tracking with a consistent transaction ledger"
)

# Create router with /api prefix
api_router = APIRouter(prefix="/api")


def is_production() -> bool:
    return os.environ.get("ENVIRONMENT", "development").lower() == "production"


def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    content = {"success": False, "message": message, "status_code": status_code}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


# ============================================
# ERROR HANDLERS
# ============================================

@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if exc.details:
        return error_response(exc.status_code, exc.message, details=exc.details)
    return error_response(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", []) if part != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    message = "; ".join(f"{e['field']}: {e['message']}" if e["field"] else e["message"] for e in errors)
    return error_response(status.HTTP_400_BAD_REQUEST, message or "Invalid input", errors=errors)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {str(exc)}", exc_info=exc)
    if is_production():
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        str(exc) or "Internal server error",
        stack=traceback.format_exception(type(exc), exc, exc.__traceback__)
    )


# ============================================
# AUTHENTICATION ENDPOINTS
# ============================================

async def issue_tokens(db: AsyncIOMotorDatabase, user: dict) -> Token:
    """Create an access/refresh pair and remember the refresh token for rotation"""
    user_id = str(user["_id"])
    token_data = {
        "user_id": user_id,
        "email": user["email"],
        "role": user.get("role", UserRole.AGENT.value)
    }

    access_token = create_access_token(data=token_data)
    refresh_token = create_refresh_token(user_id=user_id)
    refresh_payload = decode_refresh_token(refresh_token)

    await db["refresh_tokens"].insert_one({
        "jti": refresh_payload["jti"],
        "user_id": user_id,
        "token_hash": hashlib.sha256(refresh_token.encode()).hexdigest(),
        "expires_at": datetime.utcfromtimestamp(refresh_payload["exp"]),
        "is_revoked": False,
        "created_at": datetime.utcnow()
    })

    return Token(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=to_user_response(user)
    )


@api_router.post("/auth/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register_user(
    user_data: UserCreate,
    db: AsyncIOMotorDatabase = Depends(get_db),
    audit_service: AuditService = Depends(get_audit_service)
):
    """
    Register a new user.
    The first user becomes admin, every later user is an agent.
    """
    email = user_data.email.lower()
    existing_user = await db["users"].find_one({"email": email})
    if existing_user:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered"
        )

    user_count = await db["users"].count_documents({})
    role = UserRole.ADMIN.value if user_count == 0 else UserRole.AGENT.value

    now = datetime.utcnow()
    user_dict = {
        "name": user_data.name.strip(),
        "email": email,
        "hashed_password": hash_password(user_data.password),
        "role": role,
        "phone": user_data.phone,
        "active_status": True,
        "created_at": now,
        "updated_at": now
    }

    result = await db["users"].insert_one(user_dict)
    user_id = str(result.inserted_id)
    user_dict["user_id"] = user_id

    await audit_service.log_action(
        module_name="USER_MANAGEMENT",
        entity_type="USER",
        entity_id=user_id,
        action_type="CREATE",
        user_id=user_id,
        new_value={"email": email, "role": role}
    )

    return to_user_response(user_dict)


@api_router.post("/auth/login", response_model=Token)
async def login(login_data: LoginRequest, db: AsyncIOMotorDatabase = Depends(get_db)):
    """Authenticate and return a 30 minute access token plus a 7 day refresh token"""
    user = await db["users"].find_one({"email": login_data.email.lower()})

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

    logger.info(f"User {user['_id']} logged in")
    return await issue_tokens(db, user)


@api_router.post("/auth/refresh", response_model=Token)
async def refresh_access_token(request: RefreshTokenRequest, db: AsyncIOMotorDatabase = Depends(get_db)):
    """
    Refresh access token using refresh token.

    Token rotation: the old refresh token is revoked, a new one is issued.
    """
    payload = decode_refresh_token(request.refresh_token)
    jti = payload.get("jti")
    user_id = payload.get("user_id")

    token_doc = await db["refresh_tokens"].find_one({
        "jti": jti,
        "user_id": user_id,
        "is_revoked": False
    })
    if not token_doc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token is invalid or has been revoked"
        )

    user = await db["users"].find_one({"_id": ObjectId(user_id)}) if ObjectId.is_valid(user_id) else None
    if not user or not user.get("active_status", False):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive"
        )

    await db["refresh_tokens"].update_one({"jti": jti}, {"$set": {"is_revoked": True}})
    return await issue_tokens(db, user)


@api_router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow(),
        "version": app.version
    }


app.include_router(api_router)
app.include_router(user_router)
app.include_router(project_router)
app.include_router(party_router)
app.include_router(transaction_router)

# CORS middleware
cors_origins = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def create_indexes():
    try:
        await ensure_indexes(get_db())
    except Exception as e:
        logger.error(f"Index creation failed: {str(e)}")
        raise


@app.on_event("shutdown")
async def shutdown_db_client():
    close_client()
