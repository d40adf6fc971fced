from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar


_REQUEST_ID_CTX: ContextVar[str | None] = ContextVar("request_id", default=None)
_TENANT_ID_CTX: ContextVar[str | None] = ContextVar("tenant_id", default=None)
_LOCATION_ID_CTX: ContextVar[str | None] = ContextVar("location_id", default=None)


def set_request_context(
    *, request_id: str | None = None, tenant_id: str | None = None, location_id: str | None = None
) -> None:
    if request_id is not None:
        _REQUEST_ID_CTX.set(request_id)
    if tenant_id is not None:
        _TENANT_ID_CTX.set(tenant_id)
    if location_id is not None:
        _LOCATION_ID_CTX.set(location_id)


def get_request_id() -> str | None:
    return _REQUEST_ID_CTX.get()


def get_tenant_id() -> str | None:
    return _TENANT_ID_CTX.get()


def get_location_id() -> str | None:
    return _LOCATION_ID_CTX.get()


def clear_request_context() -> None:
    _REQUEST_ID_CTX.set(None)
    _TENANT_ID_CTX.set(None)
    _LOCATION_ID_CTX.set(None)


@contextmanager
def scope_context(tenant_id: str, location_id: str):
    """Tag log records emitted by background work with the scope being processed."""
    tenant_token = _TENANT_ID_CTX.set(tenant_id)
    location_token = _LOCATION_ID_CTX.set(location_id)
    try:
        yield
    finally:
        _TENANT_ID_CTX.reset(tenant_token)
        _LOCATION_ID_CTX.reset(location_token)
