from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.responses import JSONResponse

from escrow_service.api.dependencies import ActorDep, EnginesDep
from escrow_service.api.schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    DisputeResponse,
    EvidenceRequest,
    PaymentResponse,
    RaiseDisputeRequest,
    TransactionResponse,
    VerifyPaymentRequest,
)
from escrow_service.application.payments import CreateOrderCommand
from escrow_service.domain import DisputeRole


payments_router = APIRouter(prefix="/payments", tags=["payments"])
disputes_router = APIRouter(prefix="/disputes", tags=["disputes"])


def dispute_role(x_actor_role: Annotated[str, Header()] = "admin") -> DisputeRole:
    try:
        return DisputeRole(x_actor_role.upper())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role {x_actor_role!r} cannot take part in disputes",
        ) from None


@payments_router.post("", response_model=CreateOrderResponse)
async def create_order(body: CreateOrderRequest, engines: EnginesDep, actor: ActorDep) -> JSONResponse:
    result = await engines.payments.create_order(
        CreateOrderCommand(
            idempotency_key=body.idempotency_key,
            payer_id=body.payer_id,
            payee_id=body.payee_id,
            amount=body.amount,
            currency=body.currency,
            reference_id=body.reference_id,
            description=body.description,
            metadata={**body.metadata, "created_by": actor},
        )
    )
    response = CreateOrderResponse(payment=PaymentResponse.from_domain(result.payment), replayed=result.replayed)
    return JSONResponse(
        status_code=status.HTTP_200_OK if result.replayed else status.HTTP_201_CREATED,
        content=response.model_dump(mode="json"),
    )


@payments_router.post("/{payment_id}/verify")
async def verify_payment(
    payment_id: str,
    body: VerifyPaymentRequest,
    engines: EnginesDep,
    actor: ActorDep,
) -> PaymentResponse:
    payment = await engines.payments.verify_payment(
        payment_id,
        body.gateway_order_id,
        body.gateway_payment_id,
        body.signature,
        actor,
    )
    return PaymentResponse.from_domain(payment)


@payments_router.get("/{payment_id}")
async def get_payment(payment_id: str, engines: EnginesDep, actor: ActorDep) -> PaymentResponse:
    return PaymentResponse.from_domain(await engines.payments.get_payment(payment_id))


@payments_router.get("/{payment_id}/transactions")
async def list_transactions(payment_id: str, engines: EnginesDep, actor: ActorDep) -> list[TransactionResponse]:
    return [TransactionResponse.from_domain(t) for t in await engines.payments.get_transactions(payment_id)]


@payments_router.get("/{payment_id}/disputes")
async def list_payment_disputes(payment_id: str, engines: EnginesDep, actor: ActorDep) -> list[DisputeResponse]:
    return [DisputeResponse.from_domain(d) for d in await engines.disputes.list_for_payment(payment_id)]


@payments_router.post("/{payment_id}/disputes", status_code=status.HTTP_201_CREATED)
async def raise_dispute(
    payment_id: str,
    body: RaiseDisputeRequest,
    engines: EnginesDep,
    actor: ActorDep,
    role: Annotated[DisputeRole, Depends(dispute_role)],
) -> DisputeResponse:
    dispute = await engines.disputes.raise_dispute(
        payment_id,
        raised_by=actor,
        role=role,
        reason=body.reason,
        category=body.category,
        disputed_amount=body.disputed_amount,
    )
    return DisputeResponse.from_domain(dispute)


@disputes_router.get("/{dispute_id}")
async def get_dispute(dispute_id: str, engines: EnginesDep, actor: ActorDep) -> DisputeResponse:
    return DisputeResponse.from_domain(await engines.disputes.get_dispute(dispute_id))


@disputes_router.post("/{dispute_id}/evidence")
async def add_evidence(
    dispute_id: str,
    body: EvidenceRequest,
    engines: EnginesDep,
    actor: ActorDep,
    role: Annotated[DisputeRole, Depends(dispute_role)],
) -> DisputeResponse:
    dispute = await engines.disputes.add_evidence(
        dispute_id,
        submitted_by=actor,
        role=role,
        description=body.description,
        attachment_url=body.attachment_url,
    )
    return DisputeResponse.from_domain(dispute)
