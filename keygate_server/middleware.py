"""
Request gating on top of the record store.

The admission middleware authenticates the caller, reserves a concurrency
slot, lets the route run, then releases the slot and counts the request
once a successful response body has been fully sent. Portal routes
authenticate through a FastAPI dependency that applies the same credential
trust policy.
"""
from dataclasses import dataclass
from typing import Iterable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from keygate_server.credentials import authenticate, extract_credential
from keygate_server.errors import (
    ConcurrencyExceeded,
    InvalidCredential,
    KeyDisabled,
    KeyGateError,
    KeyNotFound,
    NoCredentials,
    QuotaExceeded,
)
from keygate_server.health import AdmissionMetrics
from keygate_server.logging_config import log_admission_denied, log_exception
from keygate_server.models import APIKey, User
from keygate_server.store import RecordStore

# Everything else at the admission boundary is a 403
_STATUS_BY_ERROR = (
    (QuotaExceeded, status.HTTP_429_TOO_MANY_REQUESTS),
    (ConcurrencyExceeded, status.HTTP_429_TOO_MANY_REQUESTS),
    (KeyNotFound, status.HTTP_401_UNAUTHORIZED),
    (KeyDisabled, status.HTTP_401_UNAUTHORIZED),
    (InvalidCredential, status.HTTP_401_UNAUTHORIZED),
    (NoCredentials, status.HTTP_401_UNAUTHORIZED),
)


def status_for_error(exc: KeyGateError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_403_FORBIDDEN


def error_response(exc: KeyGateError) -> JSONResponse:
    return JSONResponse(
        status_code=status_for_error(exc),
        content={"error": exc.code, "message": exc.message},
    )


def is_protected_path(path: str, prefixes: Iterable[str]) -> bool:
    """Empty and root prefixes match nothing."""
    for prefix in prefixes:
        prefix = prefix.rstrip("/")
        if prefix and (path == prefix or path.startswith(prefix + "/")):
            return True
    return False


class AdmissionMiddleware:
    """
    Gate every request under ``prefixes`` through the admission controller.

    The resolved key is available to routes as ``request.state.api_key``.
    The slot is held until the last body chunk has been sent, so streamed
    responses stay within the concurrency ceiling. Only responses below 400
    whose body completed count against the key's quota; a route that raises
    still releases its slot.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        store: RecordStore,
        prefixes: Iterable[str],
        metrics: Optional[AdmissionMetrics] = None,
    ) -> None:
        self.app = app
        self.store = store
        self.prefixes = list(prefixes)
        self.metrics = metrics

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not is_protected_path(scope.get("path", ""), self.prefixes):
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        try:
            access = authenticate(self.store, request.headers, request.query_params)
            api_key = self.store.begin_request(access.principal)
        except KeyGateError as exc:
            value, source = extract_credential(request.headers, request.query_params)
            log_admission_denied(
                value,
                exc.code,
                source=source.value if source else None,
                path=request.url.path,
            )
            if self.metrics is not None:
                self.metrics.record(exc.code)
            await error_response(exc)(scope, receive, send)
            return

        if self.metrics is not None:
            self.metrics.record("admitted")
        request.state.api_key = api_key
        request.state.access = access

        status_code = 500
        body_complete = False

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code, body_complete
            if message["type"] == "http.response.start":
                status_code = message["status"]
            elif message["type"] == "http.response.body" and not message.get("more_body", False):
                body_complete = True
            await send(message)

        success = False
        try:
            await self.app(scope, receive, send_wrapper)
            success = body_complete and status_code < 400
        finally:
            self.store.end_request(access.principal, success)

        if success:
            try:
                await run_in_threadpool(self.store.save)
            except (OSError, KeyGateError) as exc:
                log_exception(exc, context={"operation": "save", "path": request.url.path})


def install_admission_middleware(
    app: FastAPI,
    store: RecordStore,
    prefixes: Iterable[str],
    metrics: Optional[AdmissionMetrics] = None,
) -> None:
    app.add_middleware(AdmissionMiddleware, store=store, prefixes=prefixes, metrics=metrics)


def get_store(request: Request) -> RecordStore:
    """FastAPI dependency resolving the store injected at startup."""
    return request.app.state.store


@dataclass
class PortalContext:
    """Who is calling a portal route."""
    api_key: APIKey
    user: Optional[User] = None


def require_portal_context(
    request: Request,
    store: RecordStore = Depends(get_store),
) -> PortalContext:
    """
    FastAPI dependency for portal routes authenticated by API key.

    Usage:
        @router.get("/me")
        def me(ctx: PortalContext = Depends(require_portal_context)):
            ...
    """
    try:
        access = authenticate(store, request.headers, request.query_params)
    except KeyGateError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="api key required"
        )
    user = store.find_user_by_id(access.api_key.user_id)
    return PortalContext(api_key=access.api_key, user=user)
