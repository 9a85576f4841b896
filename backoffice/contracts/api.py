from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from backoffice.contracts.gateway import HttpPaymentGatewayClient, PaymentGatewayClient, PaymentGatewayError
from backoffice.contracts.schemas import (
    BillingStatusRequest,
    BillingStatusResponse,
    ContractCreate,
    ContractRead,
    ProductCreate,
    ProductRead,
)
from backoffice.contracts.service import contract_service
from backoffice.core.config import get_settings
from backoffice.core.database import get_db
from backoffice.crm.api import error_response, get_current_user, require_permission
from backoffice.crm.service import ActorUser


router = APIRouter(prefix="/api/contracts", tags=["contracts"])


def get_payment_gateway() -> PaymentGatewayClient:
    try:
        return HttpPaymentGatewayClient.from_settings(get_settings())
    except PaymentGatewayError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("/products", response_model=ProductRead, status_code=status.HTTP_201_CREATED)
def create_product(
    request: Request,
    dto: ProductCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProductRead | JSONResponse:
    try:
        require_permission(user, "contracts.products.manage")
        return contract_service.create_product(db, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="contracts_product_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("", response_model=ContractRead, status_code=status.HTTP_201_CREATED)
def create_contract(
    request: Request,
    dto: ContractCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContractRead | JSONResponse:
    try:
        require_permission(user, "contracts.create")
        return contract_service.create_contract(db, dto, created_by=user.effective_user_uuid)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="contracts_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/billing-status", response_model=BillingStatusResponse)
def sync_billing_status(
    request: Request,
    dto: BillingStatusRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    gateway: PaymentGatewayClient = Depends(get_payment_gateway),
) -> BillingStatusResponse | JSONResponse:
    try:
        require_permission(user, "contracts.billing_sync")
        return contract_service.sync_billing_statuses(db, gateway, dto.contract_ids)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="contracts_billing_status_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
