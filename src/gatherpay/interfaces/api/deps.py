# src/gatherpay/interfaces/api/deps.py

from __future__ import annotations
from fastapi import Header, HTTPException, Request, Depends, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Any, List, Set
from dataclasses import dataclass

from gatherpay.config import settings
from gatherpay.interfaces.api.security.auth import decode_token
from gatherpay.application.services import (
    ParticipationStateMachine,
    PaymentOrchestrator,
    DiscountResolver,
    RefundEngine,
    EscrowEngine,
    EventService,
    LedgerWebhookDispatcher,
)

# --- Security & Auth Dependencies ---

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class CurrentUser:
    """The authenticated caller; `sub` carries the numeric user id."""
    sub: str
    roles: List[str]
    is_authenticated: bool = False

    @property
    def user_id(self) -> int:
        return int(self.sub)

    @property
    def is_admin(self) -> bool:
        return "ADMIN" in self.roles


def get_current_user(creds: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> CurrentUser:
    if creds is None:
        return CurrentUser(sub="guest", roles=[], is_authenticated=False)
    try:
        payload = decode_token(creds.credentials)
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )
    return CurrentUser(
        sub=str(payload.get("sub", "")),
        roles=[role.upper() for role in payload.get("roles", [])],
        is_authenticated=True
    )


def require_user(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_authenticated:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    if not user.sub.isdigit():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token subject is not a user id")
    return user


def require_roles(required: Set[str]):
    """
    Dependency that requires the current user to have at least one of the specified roles.
    """
    def _dependency(user: CurrentUser = Depends(require_user)):
        if not set(user.roles).intersection(required):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user
    return _dependency


require_admin = require_roles({"ADMIN"})

# --- Service Dependencies ---


def _service(request: Request, key: str, label: str) -> Any:
    services = getattr(request.app.state, "services", None) or {}
    service = services.get(key)
    if not service:
        raise HTTPException(status_code=503, detail=f"{label} service is currently unavailable.")
    return service


def get_participation_service(request: Request) -> ParticipationStateMachine:
    return _service(request, "participation_service", "Participation")


def get_payment_service(request: Request) -> PaymentOrchestrator:
    return _service(request, "payment_service", "Payment")


def get_discount_service(request: Request) -> DiscountResolver:
    return _service(request, "discount_service", "Discount")


def get_refund_service(request: Request) -> RefundEngine:
    return _service(request, "refund_service", "Refund")


def get_escrow_service(request: Request) -> EscrowEngine:
    return _service(request, "escrow_service", "Escrow")


def get_event_service(request: Request) -> EventService:
    return _service(request, "event_service", "Event")


def get_webhook_dispatcher(request: Request) -> LedgerWebhookDispatcher:
    return _service(request, "webhook_dispatcher", "Webhook")


# --- API Key Dependency ---

def require_api_key(x_api_key: str | None = Header(default=None)):
    if settings.API_KEY and x_api_key != settings.API_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return True
