"""Dependency injection for FastAPI endpoints"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from paysick_gateway.config import settings
from paysick_gateway.domain.risk_config import MarketplaceConfig, RiskModelConfig
from paysick_gateway.infrastructure.clients.lender import LenderNotifier
from paysick_gateway.infrastructure.database.session import get_db
from paysick_gateway.infrastructure.observability.logging import log_event
from paysick_gateway.services.approval_bridge import LoanApprovalBridge
from paysick_gateway.services.marketplace import MarketplaceAuctionService
from paysick_gateway.services.risk_assessment import RiskAssessmentService

ADMIN_ROLE = "admin"


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """User resolved by the upstream auth gateway"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id


@dataclass(frozen=True)
class Caller:
    """Identity forwarded by the auth gateway"""

    user_id: str
    is_admin: bool

    def can_access(self, user_id: Optional[str]) -> bool:
        """Patients see only their own records; admins see everyone's"""
        return self.is_admin or user_id == self.user_id


def get_caller(
    x_user_role: Optional[str] = Header(default=None),
    user_id: str = Depends(get_current_user_id),
) -> Caller:
    return Caller(user_id=user_id, is_admin=(x_user_role or "").lower() == ADMIN_ROLE)


def require_admin(caller: Caller = Depends(get_caller)) -> str:
    if not caller.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return caller.user_id


def resolve_subject(caller: Caller, requested_user_id: Optional[str]) -> str:
    """Patient the request acts on; defaults to the caller, other patients need admin"""
    subject = requested_user_id or caller.user_id
    if not caller.can_access(subject):
        raise HTTPException(status_code=403, detail="Not allowed to act for another user")
    return subject


def get_risk_service(db: Session = Depends(get_db)) -> RiskAssessmentService:
    """Provide risk engine bound to the request session"""
    return RiskAssessmentService(db, RiskModelConfig.from_settings(settings), listeners=[log_event])


def get_marketplace_service(db: Session = Depends(get_db)) -> MarketplaceAuctionService:
    """Provide auction engine bound to the request session"""
    return MarketplaceAuctionService(db, MarketplaceConfig.from_settings(settings), listeners=[log_event])


def get_approval_bridge(
    auction: MarketplaceAuctionService = Depends(get_marketplace_service),
) -> LoanApprovalBridge:
    return LoanApprovalBridge(auction)


def get_lender_notifier() -> LenderNotifier:
    """Provide lender webhook client instance"""
    return LenderNotifier()
