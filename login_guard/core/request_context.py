from __future__ import annotations

from contextvars import ContextVar


_REQUEST_ID_CTX: ContextVar[str | None] = ContextVar("request_id", default=None)
_IDENTIFIER_CTX: ContextVar[str | None] = ContextVar("identifier", default=None)
_IP_ADDRESS_CTX: ContextVar[str | None] = ContextVar("ip_address", default=None)


def set_request_context(
    *, request_id: str | None = None, identifier: str | None = None, ip_address: str | None = None
) -> None:
    if request_id is not None:
        _REQUEST_ID_CTX.set(request_id)
    if identifier is not None:
        _IDENTIFIER_CTX.set(identifier)
    if ip_address is not None:
        _IP_ADDRESS_CTX.set(ip_address)


def get_request_id() -> str | None:
    return _REQUEST_ID_CTX.get()


def get_identifier() -> str | None:
    return _IDENTIFIER_CTX.get()


def get_ip_address() -> str | None:
    return _IP_ADDRESS_CTX.get()


def clear_request_context() -> None:
    _REQUEST_ID_CTX.set(None)
    _IDENTIFIER_CTX.set(None)
    _IP_ADDRESS_CTX.set(None)
