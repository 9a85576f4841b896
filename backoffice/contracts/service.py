from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from fastapi import HTTPException, status
from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from backoffice.contracts.commission import CommissionFormulaError, calculate_commission
from backoffice.contracts.gateway import (
    UNKNOWN,
    PaymentGatewayClient,
    PaymentGatewayError,
    PaymentStatus,
    resolve_payment_status,
)
from backoffice.contracts.models import Contract, Product
from backoffice.contracts.schemas import (
    BillingStatusItem,
    BillingStatusResponse,
    ContractCreate,
    ContractRead,
    ProductCreate,
    ProductRead,
)
from backoffice.core.config import get_settings
from backoffice.crm.models import Contact


logger = logging.getLogger("backoffice.contracts.service")


@dataclass(slots=True)
class ContractService:
    def create_product(self, session: Session, dto: ProductCreate) -> ProductRead:
        product = Product(**dto.model_dump())
        session.add(product)
        session.commit()
        session.refresh(product)
        return ProductRead.model_validate(product)

    def create_contract(self, session: Session, dto: ContractCreate, *, created_by: uuid.UUID) -> ContractRead:
        contact = session.get(Contact, dto.contact_id)
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")
        product = session.get(Product, dto.product_id)
        if product is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
        if dto.start_date and dto.end_date and dto.end_date < dto.start_date:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="end_date must not precede start_date",
            )

        try:
            pbs = calculate_commission(
                product,
                dto.contract_value,
                dto.custom_data,
                fallback_rate=get_settings().commission_fallback_rate,
            )
        except CommissionFormulaError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

        contract = Contract(
            **dto.model_dump(exclude={"owner_id"}),
            owner_id=dto.owner_id or contact.owner_id or created_by,
            calculated_pbs=pbs,
            status="active",
        )
        session.add(contract)
        session.commit()
        session.refresh(contract)
        return ContractRead.model_validate(contract)

    def recalculate_commissions(
        self,
        session: Session,
        *,
        opportunity_id: uuid.UUID | None = None,
        contact_id: uuid.UUID | None = None,
    ) -> list[str]:
        """Recomputes PB on the contracts linked to an opportunity or contact.

        Contracts whose formula fails keep their previous value; one message per
        failure is returned.
        """
        if opportunity_id is None and contact_id is None:
            return []

        stmt = select(Contract)
        if opportunity_id is not None:
            stmt = stmt.where(Contract.opportunity_id == opportunity_id)
        else:
            stmt = stmt.where(Contract.contact_id == contact_id)

        fallback_rate = get_settings().commission_fallback_rate
        failures: list[str] = []
        for contract in session.scalars(stmt).all():
            try:
                contract.calculated_pbs = calculate_commission(
                    contract.product,
                    contract.contract_value,
                    contract.custom_data,
                    fallback_rate=fallback_rate,
                )
            except CommissionFormulaError as exc:
                logger.warning(
                    "commission_formula_failed",
                    extra={"contract_id": str(contract.id), "error": str(exc)},
                )
                failures.append(f"Commission for contract {contract.id} could not be calculated: {exc}")
                continue
            session.add(contract)
        session.commit()
        return failures

    def sync_billing_statuses(
        self,
        session: Session,
        client: PaymentGatewayClient,
        contract_ids: list[uuid.UUID],
    ) -> BillingStatusResponse:
        if not contract_ids:
            return BillingStatusResponse()

        contracts = session.scalars(
            select(Contract).where(
                and_(
                    Contract.id.in_(contract_ids),
                    or_(Contract.gateway_subscription_id.is_not(None), Contract.gateway_bill_id.is_not(None)),
                )
            )
        ).all()

        statuses: dict[str, BillingStatusItem] = {}
        for contract in contracts:
            try:
                resolved = resolve_payment_status(client, contract.gateway_subscription_id, contract.gateway_bill_id)
            except PaymentGatewayError as exc:
                logger.warning("billing_status_lookup_failed", extra={"contract_id": str(contract.id), "error": str(exc)})
                resolved = PaymentStatus(UNKNOWN, "gateway lookup failed")
            contract.billing_status = resolved.status
            session.add(contract)
            statuses[str(contract.id)] = BillingStatusItem(status=resolved.status, details=resolved.details)
        session.commit()
        return BillingStatusResponse(statuses=statuses)


contract_service = ContractService()
