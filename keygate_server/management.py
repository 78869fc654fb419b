"""
Admin and portal routers.

The admin API is a thin mapping of partial-patch requests onto full-record
store upserts, followed by a save. The portal lets a key holder (or a user
logging in with a password) see their own keys and quota.
"""
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from keygate_server.errors import (
    InvalidCredentials,
    KeyGateError,
    KeyNotFound,
    RecordValidationError,
    UserNotFound,
)
from keygate_server.logging_config import get_logger, log_exception
from keygate_server.middleware import PortalContext, get_store, require_portal_context
from keygate_server.models import (
    APIKey,
    APIKeyUpsertRequest,
    KeyUsage,
    LoginRequest,
    User,
    UserUpsertRequest,
    sanitize_user,
)
from keygate_server.store import RecordStore, generate_api_key, hash_password

logger = get_logger(__name__)

# Management key header scheme
management_key_header = APIKeyHeader(name="X-Management-Key", auto_error=False)


def require_admin(
    request: Request,
    provided: Optional[str] = Security(management_key_header),
) -> None:
    """Compare the management key in constant time. No configured key, no access."""
    expected = request.app.state.settings.admin_password
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="management api disabled"
        )
    if not provided or not secrets.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid management key"
        )


def persist(store: RecordStore) -> None:
    """Save after a mutation; the mutation stays in memory if this fails."""
    try:
        store.save()
    except (OSError, KeyGateError) as exc:
        log_exception(exc, context={"operation": "save"})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="failed to persist store"
        )


admin_router = APIRouter(
    prefix="/api/v1/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)
portal_router = APIRouter(prefix="/api/v1/portal", tags=["portal"])


@admin_router.get("/state")
def get_state(store: RecordStore = Depends(get_store)):
    data = store.snapshot()
    return {
        "version": data.version,
        "updated_at": data.updated_at,
        "users": [sanitize_user(u) for u in data.users],
        "api_keys": data.api_keys,
    }


@admin_router.get("/users")
def list_users(store: RecordStore = Depends(get_store)):
    return {"users": [sanitize_user(u) for u in store.list_users()]}


@admin_router.post("/users")
def upsert_user(body: UserUpsertRequest, store: RecordStore = Depends(get_store)):
    """
    Create or patch a user.

    Fields left out of the body keep the stored value. A new user needs a
    password; the password is hashed before it reaches the store.
    """
    user = User()
    user_id = (body.id or "").strip()
    if user_id:
        existing = store.find_user_by_id(user_id)
        if existing is not None:
            user = existing
        user.id = user_id
    if body.username and body.username.strip():
        user.username = body.username.strip()
    if body.role and body.role.strip():
        user.role = body.role.strip()
    if body.disabled is not None:
        user.disabled = body.disabled
    if body.password and body.password.strip():
        user.password_hash = hash_password(body.password)

    if not user.id and not user.password_hash:
        raise HTTPException(status_code=400, detail="password required for new user")

    try:
        updated = store.upsert_user(user)
    except RecordValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.message)
    persist(store)
    logger.info("user_upserted", user_id=updated.id, username=updated.username)
    return {"user": sanitize_user(updated)}


@admin_router.delete("/users/{user_id}")
def delete_user(user_id: str, store: RecordStore = Depends(get_store)):
    try:
        store.delete_user(user_id)
    except UserNotFound as exc:
        raise HTTPException(status_code=404, detail=exc.message)
    persist(store)
    logger.info("user_deleted", user_id=user_id)
    return {"status": "ok"}


@admin_router.get("/keys")
def list_keys(store: RecordStore = Depends(get_store)):
    return {"api_keys": store.list_api_keys()}


@admin_router.post("/keys")
def upsert_key(
    body: APIKeyUpsertRequest,
    request: Request,
    store: RecordStore = Depends(get_store),
):
    """
    Create or patch an API key.

    New keys are enabled unless the body says otherwise, negative limits
    are stored as 0 (unlimited) and a credential is generated when none is
    given.
    """
    key = APIKey()
    key_id = (body.id or "").strip()
    if key_id:
        existing = store.find_api_key_by_id(key_id)
        if existing is not None:
            key = existing
        key.id = key_id
    if body.key is not None:
        key.key = body.key.strip()
    if body.label is not None:
        key.label = body.label.strip()
    if body.user_id is not None:
        key.user_id = body.user_id.strip()
    if body.enabled is not None:
        key.enabled = body.enabled
    elif not key.id:
        key.enabled = True
    if body.total_limit is not None:
        key.total_limit = max(body.total_limit, 0)
    if body.concurrency_limit is not None:
        key.concurrency_limit = max(body.concurrency_limit, 0)
    if body.compatibility_mode is not None:
        key.compatibility_mode = body.compatibility_mode
    if body.reset_usage:
        key.used_count = 0
    if not key.key:
        key.key = generate_api_key(request.app.state.settings.api_key_prefix)

    try:
        updated = store.upsert_api_key(key, preserve_usage=not body.reset_usage)
    except RecordValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.message)
    persist(store)
    logger.info("api_key_upserted", key_id=updated.id, label=updated.label)
    return {"api_key": updated}


@admin_router.delete("/keys/{key_id}")
def delete_key(key_id: str, store: RecordStore = Depends(get_store)):
    try:
        store.delete_api_key(key_id)
    except KeyNotFound as exc:
        raise HTTPException(status_code=404, detail=exc.message)
    persist(store)
    logger.info("api_key_deleted", key_id=key_id)
    return {"status": "ok"}


@admin_router.post("/keys/{key_id}/reset")
def reset_key_usage(key_id: str, store: RecordStore = Depends(get_store)):
    try:
        updated = store.reset_api_key_usage(key_id)
    except KeyNotFound as exc:
        raise HTTPException(status_code=404, detail=exc.message)
    persist(store)
    logger.info("api_key_usage_reset", key_id=key_id)
    return {"api_key": updated}


@admin_router.get("/usage")
def get_usage(store: RecordStore = Depends(get_store)):
    return {
        "keys": [KeyUsage.from_key(k, store.in_flight(k.id)) for k in store.list_api_keys()]
    }


@portal_router.post("/login")
def login(body: LoginRequest, store: RecordStore = Depends(get_store)):
    """Password login; returns the user and every key they own."""
    try:
        user = store.authenticate_user(body.username, body.password)
    except InvalidCredentials as exc:
        raise HTTPException(status_code=401, detail=exc.message)
    return {
        "user": sanitize_user(user),
        "keys": store.list_api_keys_by_user(user.id),
    }


@portal_router.get("/me")
def portal_me(ctx: PortalContext = Depends(require_portal_context)):
    return {
        "user": sanitize_user(ctx.user) if ctx.user else None,
        "keys": [ctx.api_key],
    }


@portal_router.get("/usage")
def portal_usage(
    ctx: PortalContext = Depends(require_portal_context),
    store: RecordStore = Depends(get_store),
):
    return {"keys": [KeyUsage.from_key(ctx.api_key, store.in_flight(ctx.api_key.id))]}
