from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status

from escrow_service.api.dependencies import ActorDep, EnginesDep
from escrow_service.api.schemas import (
    DisputeResponse,
    PaymentResponse,
    RefundRequest,
    ReleaseRequest,
    ResolveDisputeRequest,
    RevenueStatsResponse,
    SettleRequest,
)
from escrow_service.domain import ActorType, DisputeRole, DisputeStatus


router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/payments/{payment_id}/release")
async def release_escrow(
    payment_id: str,
    engines: EnginesDep,
    actor: ActorDep,
    body: ReleaseRequest | None = None,
) -> PaymentResponse:
    reason = body.reason if body else ReleaseRequest().reason
    payment = await engines.escrow.release(payment_id, actor, ActorType.ADMIN, reason)
    return PaymentResponse.from_domain(payment)


@router.post("/payments/{payment_id}/settle")
async def settle_payment(
    payment_id: str,
    body: SettleRequest,
    engines: EnginesDep,
    actor: ActorDep,
) -> PaymentResponse:
    payment = await engines.escrow.settle(payment_id, body.batch_id, actor, ActorType.ADMIN)
    return PaymentResponse.from_domain(payment)


@router.post("/payments/{payment_id}/refund")
async def refund_payment(
    payment_id: str,
    body: RefundRequest,
    engines: EnginesDep,
    actor: ActorDep,
) -> PaymentResponse:
    payment = await engines.refunds.initiate_refund(payment_id, body.amount, body.reason, actor, ActorType.ADMIN)
    return PaymentResponse.from_domain(payment)


@router.get("/disputes")
async def list_disputes(
    engines: EnginesDep,
    actor: ActorDep,
    dispute_status: Annotated[DisputeStatus, Query(alias="status")] = DisputeStatus.OPEN,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> list[DisputeResponse]:
    return [DisputeResponse.from_domain(d) for d in await engines.disputes.list_by_status(dispute_status, limit)]


@router.post("/disputes/{dispute_id}/review")
async def review_dispute(dispute_id: str, engines: EnginesDep, actor: ActorDep) -> DisputeResponse:
    return DisputeResponse.from_domain(await engines.disputes.mark_under_review(dispute_id, actor))


@router.post("/disputes/{dispute_id}/resolve")
async def resolve_dispute(
    dispute_id: str,
    body: ResolveDisputeRequest,
    engines: EnginesDep,
    actor: ActorDep,
) -> DisputeResponse:
    match body.in_favor_of:
        case DisputeRole.PAYER:
            dispute = await engines.disputes.resolve_for_payer(dispute_id, actor, body.notes)
        case DisputeRole.PAYEE:
            dispute = await engines.disputes.resolve_for_payee(dispute_id, actor, body.notes)
        case _:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Disputes are resolved in favor of the payer or the payee",
            )
    return DisputeResponse.from_domain(dispute)


@router.get("/reports/revenue")
async def revenue_report(
    engines: EnginesDep,
    actor: ActorDep,
    from_: Annotated[datetime, Query(alias="from")],
    to: Annotated[datetime, Query()],
) -> RevenueStatsResponse:
    try:
        stats = await engines.reporting.revenue_stats(from_, to)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e
    return RevenueStatsResponse.from_domain(stats)


@router.post("/sweeps/run")
async def run_sweeps(engines: EnginesDep, actor: ActorDep) -> dict[str, int]:
    """Run the auto-release and auto-resolve sweeps now instead of waiting for the scheduler."""
    return await engines.scheduler.run_once()
