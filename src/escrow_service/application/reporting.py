from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

import structlog

from escrow_service.application.unit_of_work import UnitOfWorkFactory


logger = structlog.get_logger()

PERCENT = Decimal("0.01")


@dataclass(frozen=True)
class RevenueStats:
    period_from: datetime
    period_to: datetime
    gross_merchandise_value: Decimal
    net_platform_revenue: Decimal
    escrow_balance: Decimal
    refunded_total: Decimal
    payee_payouts: Decimal
    completed_payments: int
    active_disputes: int
    refund_rate: Decimal
    failure_rate: Decimal


def _rate(count: int, total: int) -> Decimal:
    if total == 0:
        return Decimal("0.00")
    return (Decimal(count) * 100 / Decimal(total)).quantize(PERCENT, rounding=ROUND_HALF_UP)


class ReportingService:
    def __init__(self, uow_factory: UnitOfWorkFactory) -> None:
        self._uow_factory = uow_factory

    async def revenue_stats(self, from_: datetime, to: datetime) -> RevenueStats:
        """Platform money figures for payments created in ``[from_, to)``.

        Rates are percentages of all payments created in the window.
        """
        if to <= from_:
            raise ValueError("Reporting window end must be after its start")

        async with self._uow_factory() as uow:
            totals = await uow.payments.revenue_totals(from_, to)
            active_disputes = await uow.disputes.count_active()

        stats = RevenueStats(
            period_from=from_,
            period_to=to,
            gross_merchandise_value=totals.gmv,
            net_platform_revenue=totals.net_revenue,
            escrow_balance=totals.escrow_balance,
            refunded_total=totals.refunded,
            payee_payouts=totals.payouts,
            completed_payments=totals.completed_count,
            active_disputes=active_disputes,
            refund_rate=_rate(totals.refunded_count, totals.total_count),
            failure_rate=_rate(totals.failed_count, totals.total_count),
        )
        logger.info(
            "revenue_stats_computed",
            period_from=from_.isoformat(),
            period_to=to.isoformat(),
            gmv=str(stats.gross_merchandise_value),
            payments=totals.total_count,
        )
        return stats
