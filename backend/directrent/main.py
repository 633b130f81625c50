from __future__ import annotations

import datetime as dt
import logging
import math
import time
from typing import Annotated, Any, Iterator, Literal

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import InterfaceError, OperationalError
from starlette.middleware.trustedhost import TrustedHostMiddleware

import jwt

from directrent.config import (
    allowed_hosts,
    app_env,
    contact_rate_limit,
    cors_origins,
    enforce_secure_secrets,
    frontend_url,
    is_local_dev,
    payments_dev_mode,
    storage_backend,
)
from directrent.db import ENGINE, session_scope
from directrent.entitlements import EntitlementRecord, as_utc, effective_remaining, is_subscription_active, utcnow
from directrent.errors import (
    ApiError,
    BadRequest,
    Conflict,
    Forbidden,
    NotFound,
    PaymentError,
    StoreUnavailable,
    Unauthorized,
)
from directrent.models import Base
from directrent.payments import (
    PaymentGatewayError,
    PaystackNotConfigured,
    initialize_transaction,
    new_reference,
    verify_transaction,
)
from directrent.rate_limit import limiter
from directrent.security import (
    create_access_token,
    decode_access_token,
    hash_password,
    normalize_phone,
    verify_password,
)
from directrent.storage.base import (
    LISTING_REMOVED,
    ContactStore,
    DuplicatePhone,
    DuplicateReference,
    Listing,
    UserAccount,
)
from directrent.storage.memory import MemoryContactStore
from directrent.storage.sql import SqlContactStore
from directrent.tiers import (
    TIER_CATALOG,
    SubscriptionTier,
    definition_for,
    paid_tiers,
    tier_catalog_out,
    tier_out,
)
from directrent.unlock import ContactUnlockService, UnlockOutcome, contacts_remaining


logger = logging.getLogger(__name__)

app = FastAPI(title="DirectRent API")

# Production hardening: ensure we don't run with dangerous defaults.
enforce_secure_secrets()

app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts())


@app.middleware("http")
async def _security_headers(request: Request, call_next):
    started = time.monotonic()
    resp = await call_next(request)
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("X-Frame-Options", "DENY")
    resp.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    logger.info(
        "%s %s - %s (%dms)",
        request.method,
        request.url.path,
        resp.status_code,
        int((time.monotonic() - started) * 1000),
    )
    return resp


app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------
# Error handling
# -----------------------
def _error_response(err: ApiError) -> JSONResponse:
    return JSONResponse(status_code=err.status_code, content=jsonable_encoder(err.to_payload()))


@app.exception_handler(ApiError)
async def _api_error(request: Request, exc: ApiError):
    return _error_response(exc)


@app.exception_handler(OperationalError)
@app.exception_handler(InterfaceError)
async def _store_unavailable(request: Request, exc: Exception):
    logger.error("database unavailable on %s %s: %s", request.method, request.url.path, exc)
    return _error_response(StoreUnavailable())


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    details = [
        {"path": ".".join(str(p) for p in (e.get("loc") or ()) if p != "body"), "message": e.get("msg", "")}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Validation failed", "code": "VALIDATION_ERROR", "details": details},
    )


# -----------------------
# Dependencies
# -----------------------
_memory_store: MemoryContactStore | None = None


def _shared_memory_store() -> MemoryContactStore:
    global _memory_store
    if _memory_store is None:
        _memory_store = MemoryContactStore()
    return _memory_store


def get_store() -> Iterator[ContactStore]:
    if storage_backend() == "memory":
        yield _shared_memory_store()
        return
    with session_scope() as db:
        yield SqlContactStore(db)


def get_unlock_service(store: Annotated[ContactStore, Depends(get_store)]) -> ContactUnlockService:
    return ContactUnlockService(store)


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None


def _user_from_token(store: ContactStore, token: str) -> UserAccount:
    try:
        payload = decode_access_token(token)
        user_id = int(payload.get("sub") or 0)
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except (jwt.InvalidTokenError, ValueError):
        raise Unauthorized("Invalid token")
    user = store.get_user(user_id) if user_id else None
    if not user:
        raise Unauthorized("User not found")
    return user


def get_current_user(
    store: Annotated[ContactStore, Depends(get_store)],
    authorization: Annotated[str | None, Header()] = None,
) -> UserAccount:
    token = _bearer_token(authorization)
    if not token:
        raise Unauthorized("No token provided")
    return _user_from_token(store, token)


def get_optional_user(
    store: Annotated[ContactStore, Depends(get_store)],
    authorization: Annotated[str | None, Header()] = None,
) -> UserAccount | None:
    token = _bearer_token(authorization)
    if not token:
        return None
    try:
        return _user_from_token(store, token)
    except Unauthorized:
        return None


def require_admin(me: Annotated[UserAccount, Depends(get_current_user)]) -> UserAccount:
    if (me.role or "").lower() != "admin":
        raise Forbidden("Admin only")
    return me


@app.on_event("startup")
def _create_local_schema() -> None:
    """
    Local sqlite runs have no migration step; create tables directly.
    Real databases are managed by Alembic (`alembic upgrade head` from backend/).
    """
    if storage_backend() == "sql" and is_local_dev():
        Base.metadata.create_all(ENGINE)


# -----------------------
# Schemas
# -----------------------
PaidTier = Literal["BASIC", "RELAX", "SUPERUSER"]
AnyTier = Literal["FREE", "BASIC", "RELAX", "SUPERUSER"]
ListingStatus = Literal["available", "rented"]
ListingSort = Literal["newest", "price_asc", "price_desc"]


class RegisterIn(BaseModel):
    phone: str = Field(..., min_length=9, max_length=32)
    full_name: str = Field(..., min_length=1, max_length=255, alias="fullName")
    password: str = Field(..., min_length=6, max_length=128)
    role: Literal["tenant", "landlord"] = "tenant"

    model_config = {"populate_by_name": True}


class LoginIn(BaseModel):
    phone: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class PropertyCreateIn(BaseModel):
    title: str = Field(..., min_length=3, max_length=255)
    description: str = Field("", max_length=5000)
    price: int = Field(..., ge=0)
    city: str = Field("", max_length=120)
    neighborhood: str = Field("", max_length=160)


class PropertyUpdateIn(BaseModel):
    title: str | None = Field(None, min_length=3, max_length=255)
    description: str | None = Field(None, max_length=5000)
    price: int | None = Field(None, ge=0)
    city: str | None = Field(None, max_length=120)
    neighborhood: str | None = Field(None, max_length=160)
    status: ListingStatus | None = None


class InitializePaymentIn(BaseModel):
    tier: PaidTier


class DevCompleteIn(BaseModel):
    tier: PaidTier
    reference: str = Field(..., min_length=1)


class SubscribeIn(BaseModel):
    tier: PaidTier
    payment_reference: str = Field(..., min_length=1, alias="paymentReference")

    model_config = {"populate_by_name": True}


class AdminSubscriptionIn(BaseModel):
    tier: AnyTier | None = None
    expires_at: dt.datetime | None = Field(None, alias="expiresAt")
    contacts_remaining: int | None = Field(None, ge=0, alias="contactsRemaining")

    model_config = {"populate_by_name": True}


# -----------------------
# Serializers
# -----------------------
def _user_out(u: UserAccount) -> dict[str, Any]:
    return {"id": u.id, "phone": u.phone, "fullName": u.full_name, "role": u.role, "createdAt": u.created_at}


def _subscription_out(record: EntitlementRecord, now: dt.datetime) -> dict[str, Any]:
    return {
        "subscriptionTier": record.subscription_tier.value,
        "subscriptionExpiresAt": record.subscription_expires_at,
        "freeContactsRemaining": effective_remaining(record, now),
        "freeContactsResetAt": record.free_contacts_reset_at,
        "isActive": is_subscription_active(record, now),
        "contactsRemaining": contacts_remaining(record, now),
        "tierDetails": tier_out(definition_for(record.subscription_tier)),
    }


def _property_out(p: Listing, *, show_contact: bool) -> dict[str, Any]:
    owner: dict[str, Any] = {"id": p.owner.id, "fullName": p.owner.full_name}
    if show_contact:
        owner["phone"] = p.owner.phone
    return {
        "id": p.id,
        "title": p.title,
        "description": p.description,
        "price": p.price,
        "city": p.city,
        "neighborhood": p.neighborhood,
        "status": p.status,
        "createdAt": p.created_at,
        "owner": owner,
    }


def _entitlement_or_404(store: ContactStore, user_id: int) -> EntitlementRecord:
    record = store.get_entitlement(user_id)
    if record is None:
        raise NotFound("User")
    return record


def _pagination(page: int, limit: int, total: int) -> dict[str, int]:
    return {"page": page, "limit": limit, "total": total, "totalPages": math.ceil(total / limit)}


def _listings_for_viewer(store: ContactStore, me: UserAccount | None, listings: list[Listing]) -> list[dict[str, Any]]:
    """Owner phone only for listings the viewer unlocked, owns, or (as admin) manages."""
    unlocked = store.unlocked_property_ids(me.id, [p.id for p in listings]) if me is not None else set()
    out = []
    for p in listings:
        contacted = p.id in unlocked
        privileged = me is not None and (me.id == p.owner.id or me.role == "admin")
        item = _property_out(p, show_contact=contacted or privileged)
        item["contacted"] = contacted
        out.append(item)
    return out


def _managed_listing(store: ContactStore, me: UserAccount, property_id: int, action: str) -> Listing:
    p = store.get_property(property_id)
    if p is None or p.is_removed:
        raise NotFound("Property")
    if p.owner.id != me.id and me.role != "admin":
        raise Forbidden(f"Not authorized to {action} this property")
    return p


# -----------------------
# Health
# -----------------------
@app.get("/health")
def health():
    return {"status": "ok", "env": app_env(), "timestamp": utcnow()}


# -----------------------
# Auth
# -----------------------
@app.post("/api/auth/register", status_code=201)
def register(data: RegisterIn, store: Annotated[ContactStore, Depends(get_store)]):
    phone = normalize_phone(data.phone)
    if not phone:
        raise BadRequest("Enter a valid Ghana phone number")
    try:
        user = store.create_user(
            phone=phone,
            full_name=data.full_name.strip(),
            password_hash=hash_password(data.password),
            role=data.role,
        )
    except DuplicatePhone:
        raise Conflict("Phone number already registered")
    logger.info("registered user id=%s role=%s", user.id, user.role)
    return {"token": create_access_token(user_id=user.id, role=user.role), "user": _user_out(user)}


@app.post("/api/auth/login")
def login(data: LoginIn, store: Annotated[ContactStore, Depends(get_store)]):
    phone = normalize_phone(data.phone)
    limiter.hit(key=f"login:{phone or data.phone}", limit=10, window_seconds=10 * 60, detail="Too many login attempts")
    user = store.find_user_by_phone(phone) if phone else None
    if not user or not verify_password(data.password, user.password_hash):
        raise Unauthorized("Invalid phone or password")
    return {"token": create_access_token(user_id=user.id, role=user.role), "user": _user_out(user)}


@app.get("/api/auth/me")
def me_profile(
    me: Annotated[UserAccount, Depends(get_current_user)],
    store: Annotated[ContactStore, Depends(get_store)],
):
    record = _entitlement_or_404(store, me.id)
    return {"user": _user_out(me), "subscription": _subscription_out(record, utcnow())}


# -----------------------
# Properties (browse is free; owner phone is unlock-gated)
# -----------------------
@app.post("/api/properties", status_code=201)
def create_property(
    data: PropertyCreateIn,
    me: Annotated[UserAccount, Depends(get_current_user)],
    store: Annotated[ContactStore, Depends(get_store)],
):
    if me.role not in {"landlord", "admin"}:
        raise Forbidden("Only landlords can list properties")
    p = store.create_property(
        owner_id=me.id,
        title=data.title.strip(),
        description=data.description.strip(),
        price=data.price,
        city=data.city.strip(),
        neighborhood=data.neighborhood.strip(),
    )
    return {"property": _property_out(p, show_contact=True)}


@app.get("/api/properties/{property_id:int}")
def get_property(
    property_id: int,
    me: Annotated[UserAccount | None, Depends(get_optional_user)],
    store: Annotated[ContactStore, Depends(get_store)],
):
    p = store.get_property(property_id)
    if not p or p.is_removed:
        raise NotFound("Property")
    return {"property": _listings_for_viewer(store, me, [p])[0]}


@app.get("/api/properties")
def search_properties(
    me: Annotated[UserAccount | None, Depends(get_optional_user)],
    store: Annotated[ContactStore, Depends(get_store)],
    city: str | None = None,
    neighborhood: str | None = None,
    min_price: Annotated[int | None, Query(alias="minPrice", ge=0)] = None,
    max_price: Annotated[int | None, Query(alias="maxPrice", ge=0)] = None,
    sort_by: Annotated[ListingSort, Query(alias="sortBy")] = "newest",
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=50)] = 20,
):
    listings, total = store.search_properties(
        city=city,
        neighborhood=neighborhood,
        min_price=min_price,
        max_price=max_price,
        sort=sort_by,
        offset=(page - 1) * limit,
        limit=limit,
    )
    return {"properties": _listings_for_viewer(store, me, listings), "pagination": _pagination(page, limit, total)}


@app.get("/api/properties/my/listings")
def my_listings(
    me: Annotated[UserAccount, Depends(get_current_user)],
    store: Annotated[ContactStore, Depends(get_store)],
):
    return {"properties": [_property_out(p, show_contact=True) for p in store.list_owner_properties(me.id)]}


@app.patch("/api/properties/{property_id:int}")
def update_property(
    property_id: int,
    data: PropertyUpdateIn,
    me: Annotated[UserAccount, Depends(get_current_user)],
    store: Annotated[ContactStore, Depends(get_store)],
):
    _managed_listing(store, me, property_id, "edit")
    changes = data.model_dump(exclude_none=True)
    for k in ("title", "description", "city", "neighborhood"):
        if k in changes:
            changes[k] = changes[k].strip()
    p = store.update_property(property_id, **changes)
    return {"property": _property_out(p, show_contact=True)}


@app.delete("/api/properties/{property_id:int}")
def delete_property(
    property_id: int,
    me: Annotated[UserAccount, Depends(get_current_user)],
    store: Annotated[ContactStore, Depends(get_store)],
):
    _managed_listing(store, me, property_id, "delete")
    # Soft delete: earlier unlocks keep pointing at the row.
    store.update_property(property_id, status=LISTING_REMOVED)
    logger.info("listing removed id=%s by user=%s", property_id, me.id)
    return {"success": True}


# -----------------------
# Contact unlock
# -----------------------
@app.post("/api/contacts/unlock/{property_id:int}")
def unlock_contact(
    property_id: int,
    me: Annotated[UserAccount, Depends(get_current_user)],
    service: Annotated[ContactUnlockService, Depends(get_unlock_service)],
):
    limiter.hit(
        key=f"contact:{me.id}",
        limit=contact_rate_limit(),
        window_seconds=60,
        detail="Too many contact unlock requests",
    )
    result = service.unlock(me.id, property_id)
    if result.outcome is UnlockOutcome.DENIED:
        return JSONResponse(status_code=403, content=result.to_payload())
    return result.to_payload()


@app.get("/api/contacts/my/unlocked")
def my_unlocked_contacts(
    me: Annotated[UserAccount, Depends(get_current_user)],
    service: Annotated[ContactUnlockService, Depends(get_unlock_service)],
):
    unlocks = []
    for grant, p in service.unlocked_contacts(me.id):
        item = _property_out(p, show_contact=True)
        item["unlockedAt"] = grant.unlocked_at
        unlocks.append(item)
    return {"unlocks": unlocks}


@app.get("/api/contacts/status/{property_id:int}")
def unlock_status(
    property_id: int,
    me: Annotated[UserAccount, Depends(get_current_user)],
    service: Annotated[ContactUnlockService, Depends(get_unlock_service)],
):
    return service.status(me.id, property_id).to_payload()


# -----------------------
# Subscriptions
# -----------------------
def _activate(store: ContactStore, user_id: int, tier: SubscriptionTier, now: dt.datetime) -> EntitlementRecord:
    d = TIER_CATALOG[tier]
    expires_at = now + dt.timedelta(days=d.period_days)
    record = store.activate_subscription(user_id, tier, expires_at)
    if record is None:
        raise NotFound("User")
    logger.info("subscription activated user=%s tier=%s expires=%s", user_id, tier.value, expires_at.isoformat())
    return record


def _activation_out(record: EntitlementRecord, message: str | None = None) -> dict[str, Any]:
    d = definition_for(record.subscription_tier)
    out: dict[str, Any] = {
        "success": True,
        "subscription": {
            "tier": record.subscription_tier.value,
            "expiresAt": record.subscription_expires_at,
            "contactsPerMonth": d.quota.display(),
            "tierDetails": tier_out(d),
        },
    }
    if message:
        out["message"] = message
    return out


def _dev_complete(store: ContactStore, me: UserAccount, tier: SubscriptionTier, reference: str) -> dict[str, Any]:
    now = utcnow()
    payment = store.get_payment(reference)
    if payment is None:
        payment = store.create_payment(
            user_id=me.id, reference=reference, tier=tier, amount_cedis=TIER_CATALOG[tier].monthly_price_cedis, provider="dev"
        )
    elif payment.user_id != me.id:
        raise Forbidden("Payment reference belongs to another account")
    if payment.is_paid:
        raise Conflict("Payment reference already used")
    if payment.tier is not tier:
        raise BadRequest(f"Payment reference was issued for the {payment.tier.value} plan")
    if not store.mark_payment_paid(reference, now):
        raise Conflict("Payment reference already used")
    record = _activate(store, me.id, tier, now)
    return _activation_out(record, "Subscription activated successfully (dev mode)")


def _settle_verified(
    store: ContactStore, me: UserAccount, reference: str, tier: SubscriptionTier | None = None
) -> dict[str, Any]:
    payment = store.get_payment(reference)
    if payment is None or payment.user_id != me.id:
        raise NotFound("Payment")
    if tier is not None and payment.tier is not tier:
        raise BadRequest(f"Payment reference was issued for the {payment.tier.value} plan")
    try:
        data = verify_transaction(reference)
    except PaystackNotConfigured as e:
        raise PaymentError(str(e))
    except PaymentGatewayError as e:
        raise PaymentError(str(e))
    if (data.get("status") or "") != "success":
        raise BadRequest("Payment verification failed")
    paid_pesewas = int(data.get("amount") or 0)
    if paid_pesewas < payment.amount_cedis * 100:
        logger.warning("underpaid reference=%s paid=%s expected=%s", reference, paid_pesewas, payment.amount_cedis * 100)
        raise BadRequest("Payment verification failed")

    now = utcnow()
    if store.mark_payment_paid(reference, now):
        record = _activate(store, me.id, payment.tier, now)
    else:
        # Already settled by an earlier verify; don't extend twice.
        record = _entitlement_or_404(store, me.id)
    return _activation_out(record)


@app.get("/api/subscriptions/tiers")
def subscription_tiers():
    return {"tiers": tier_catalog_out()}


@app.get("/api/subscriptions/my")
def my_subscription(
    me: Annotated[UserAccount, Depends(get_current_user)],
    store: Annotated[ContactStore, Depends(get_store)],
):
    record = _entitlement_or_404(store, me.id)
    return {"subscription": _subscription_out(record, utcnow())}


@app.post("/api/subscriptions/initialize-payment")
def initialize_payment(
    data: InitializePaymentIn,
    me: Annotated[UserAccount, Depends(get_current_user)],
    store: Annotated[ContactStore, Depends(get_store)],
):
    tier = SubscriptionTier(data.tier)
    d = TIER_CATALOG[tier]
    reference = new_reference(me.id)
    dev = payments_dev_mode()
    try:
        store.create_payment(
            user_id=me.id,
            reference=reference,
            tier=tier,
            amount_cedis=d.monthly_price_cedis,
            provider="dev" if dev else "paystack",
        )
    except DuplicateReference:
        raise Conflict("Please retry payment initialization")

    if dev:
        logger.info("[dev] payment initialized tier=%s amount=%s reference=%s", tier.value, d.monthly_price_cedis, reference)
        return {
            "success": True,
            "devMode": True,
            "reference": reference,
            "tier": tier.value,
            "amount": d.monthly_price_cedis,
            "message": "Dev mode - use /api/subscriptions/dev-complete to simulate payment",
            "completeUrl": f"/api/subscriptions/dev-complete?reference={reference}&tier={tier.value}",
        }

    try:
        gateway = initialize_transaction(
            # Paystack requires an email; tenants sign up with phone only.
            email=f"{me.phone.lstrip('+')}@directrent.gh",
            amount_cedis=d.monthly_price_cedis,
            reference=reference,
            callback_url=f"{frontend_url()}/pricing/callback",
            metadata={
                "userId": me.id,
                "tier": tier.value,
                "custom_fields": [{"display_name": "Plan", "variable_name": "plan", "value": d.name}],
            },
        )
    except (PaystackNotConfigured, PaymentGatewayError) as e:
        raise PaymentError(str(e))
    return {
        "success": True,
        "devMode": False,
        "reference": reference,
        "authorizationUrl": gateway.get("authorization_url"),
        "accessCode": gateway.get("access_code"),
    }


@app.post("/api/subscriptions/dev-complete")
def dev_complete(
    data: DevCompleteIn,
    me: Annotated[UserAccount, Depends(get_current_user)],
    store: Annotated[ContactStore, Depends(get_store)],
):
    if not payments_dev_mode():
        raise Forbidden("This endpoint is only available in development mode")
    return _dev_complete(store, me, SubscriptionTier(data.tier), data.reference.strip())


@app.get("/api/subscriptions/verify/{reference}")
def verify_payment(
    reference: str,
    me: Annotated[UserAccount, Depends(get_current_user)],
    store: Annotated[ContactStore, Depends(get_store)],
):
    if payments_dev_mode():
        record = _entitlement_or_404(store, me.id)
        return {
            "success": True,
            "devMode": True,
            "verified": record.subscription_tier is not SubscriptionTier.FREE,
            "subscription": {
                "subscriptionTier": record.subscription_tier.value,
                "subscriptionExpiresAt": record.subscription_expires_at,
            },
        }
    return _settle_verified(store, me, reference.strip())


@app.post("/api/subscriptions/subscribe")
def subscribe(
    data: SubscribeIn,
    me: Annotated[UserAccount, Depends(get_current_user)],
    store: Annotated[ContactStore, Depends(get_store)],
):
    """Legacy alias: activation always goes through a payment reference."""
    reference = data.payment_reference.strip()
    if payments_dev_mode():
        return _dev_complete(store, me, SubscriptionTier(data.tier), reference)
    return _settle_verified(store, me, reference, SubscriptionTier(data.tier))


# -----------------------
# Admin
# -----------------------
@app.get("/api/admin/revenue")
def admin_revenue(
    _admin: Annotated[UserAccount, Depends(require_admin)],
    store: Annotated[ContactStore, Depends(get_store)],
):
    """
    Revenue dashboard (basic): paid subscription payments aggregated by tier.
    """
    totals = store.revenue_by_tier()
    items = []
    for tier, d in TIER_CATALOG.items():
        if tier is SubscriptionTier.FREE:
            continue
        count, revenue = totals.get(tier, (0, 0))
        items.append(
            {
                "tier": tier.value,
                "name": d.name,
                "priceCedis": d.monthly_price_cedis,
                "subscriptions": count,
                "revenueCedis": revenue,
            }
        )
    items.sort(key=lambda x: x["revenueCedis"], reverse=True)
    return {"items": items, "totalRevenueCedis": sum(x["revenueCedis"] for x in items)}


@app.get("/api/admin/users")
def admin_users(
    _admin: Annotated[UserAccount, Depends(require_admin)],
    store: Annotated[ContactStore, Depends(get_store)],
    role: Literal["tenant", "landlord", "admin"] | None = None,
    search: str | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
):
    users, total = store.list_users(role=role, search=search, offset=(page - 1) * limit, limit=limit)
    return {"users": [_user_out(u) for u in users], "pagination": _pagination(page, limit, total)}


@app.get("/api/admin/subscriptions")
def admin_subscriptions(
    _admin: Annotated[UserAccount, Depends(require_admin)],
    store: Annotated[ContactStore, Depends(get_store)],
    tier: PaidTier | None = None,
    status: Literal["ACTIVE", "EXPIRED"] | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
):
    now = utcnow()
    rows, total = store.list_subscribers(
        now=now,
        tier=SubscriptionTier(tier) if tier else None,
        active=None if status is None else status == "ACTIVE",
        offset=(page - 1) * limit,
        limit=limit,
    )
    active_counts = store.active_subscriber_counts(now)
    subscriptions = []
    for user, record in rows:
        item = _subscription_out(record, now)
        item["user"] = {"id": user.id, "fullName": user.full_name, "phone": user.phone}
        subscriptions.append(item)
    return {
        "subscriptions": subscriptions,
        "tierStats": {d.tier.value: active_counts.get(d.tier, 0) for d in paid_tiers()},
        "pagination": _pagination(page, limit, total),
    }


@app.put("/api/admin/subscriptions/{user_id:int}")
def admin_update_subscription(
    user_id: int,
    data: AdminSubscriptionIn,
    admin: Annotated[UserAccount, Depends(require_admin)],
    store: Annotated[ContactStore, Depends(get_store)],
):
    """
    Manual override (support refunds, comped plans). Omitted fields keep their value;
    a new paid tier without `expiresAt` runs for one tier period from now, and
    `contactsRemaining` starts a fresh free-quota period.
    """
    now = utcnow()
    record = _entitlement_or_404(store, user_id)
    tier = SubscriptionTier(data.tier) if data.tier else record.subscription_tier

    if tier is SubscriptionTier.FREE:
        expires_at = None
    elif data.expires_at is not None:
        expires_at = as_utc(data.expires_at)
    elif tier is not record.subscription_tier:
        expires_at = now + dt.timedelta(days=TIER_CATALOG[tier].period_days)
    else:
        expires_at = record.subscription_expires_at

    if data.contacts_remaining is not None:
        remaining, reset_at = data.contacts_remaining, now
    else:
        remaining, reset_at = record.free_contacts_remaining, record.free_contacts_reset_at

    updated = store.override_entitlement(
        user_id,
        tier=tier,
        expires_at=expires_at,
        free_contacts_remaining=remaining,
        free_contacts_reset_at=reset_at,
    )
    if updated is None:
        raise NotFound("User")
    logger.info(
        "admin=%s overrode subscription user=%s tier=%s expires=%s remaining=%s",
        admin.id,
        user_id,
        tier.value,
        expires_at.isoformat() if expires_at else None,
        remaining,
    )
    return {"subscription": _subscription_out(updated, now), "message": "Subscription updated successfully"}
