from collections.abc import Callable
from types import TracebackType
from typing import Self

from sqlalchemy.ext.asyncio import AsyncSession

from escrow_service.infrastructure.repositories import (
    DisputeRepository,
    OutboxRepository,
    PaymentRepository,
    TransactionRepository,
)


class UnitOfWork:
    """One database transaction over the payment, ledger, dispute and outbox tables."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self.payments = PaymentRepository(session)
        self.transactions = TransactionRepository(session)
        self.disputes = DisputeRepository(session)
        self.outbox = OutboxRepository(session)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            await self.rollback()
        await self._session.close()

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()


UnitOfWorkFactory = Callable[[], UnitOfWork]
