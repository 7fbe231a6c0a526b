"""Dependency injection for FastAPI endpoints"""

from fastapi import HTTPException, Request
from bison_billing.domain.exceptions import (
    AccountExistsError,
    AccountNotFoundError,
    ConfigError,
    ConflictError,
    DomainException,
    InvalidAmountError,
    NotificationError,
    ResumeRefusedError,
    StoreUnavailableError,
)
from bison_billing.domain.models import BillingConfig
from bison_billing.engine.container import Engine

# Domain error -> HTTP status
ERROR_STATUS = {
    AccountNotFoundError: 404,
    AccountExistsError: 409,
    ConflictError: 409,
    ResumeRefusedError: 409,
    InvalidAmountError: 422,
    ConfigError: 422,
    NotificationError: 502,
    StoreUnavailableError: 503,
}


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_engine(request: Request) -> Engine:
    """Engine components built once per application"""
    return request.app.state.engine


def get_billing_config(request: Request) -> BillingConfig:
    """Current billing configuration snapshot"""
    try:
        return get_engine(request).config_repo.load_billing_config()
    except StoreUnavailableError as e:
        raise http_error(e) from e


def http_error(error: DomainException) -> HTTPException:
    """Map a domain error onto an HTTP error response"""
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            detail = "Ledger store unavailable" if status_code == 503 else str(error)
            return HTTPException(status_code=status_code, detail=detail)
    return HTTPException(status_code=500, detail="Internal server error")
