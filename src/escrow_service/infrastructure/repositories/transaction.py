from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_service.domain.exceptions import DuplicateGatewayReferenceError
from escrow_service.domain.models import Transaction, TransactionType


REFUND_REFERENCE_INDEX = "uq_transactions_refund_reference"


class TransactionRepository:
    """Append-only money movement records. Rows are never updated or deleted."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, transaction: Transaction) -> None:
        """Append one movement. A gateway refund id may back only one refund row."""
        try:
            await self._session.execute(
                text("""
                    INSERT INTO transactions
                        (id, payment_id, type, amount, currency, description,
                         external_reference, created_at)
                    VALUES
                        (:id, :payment_id, :type, :amount, :currency, :description,
                         :external_reference, :created_at)
                """),
                {
                    "id": transaction.id,
                    "payment_id": transaction.payment_id,
                    "type": transaction.type.value,
                    "amount": transaction.amount,
                    "currency": transaction.currency,
                    "description": transaction.description,
                    "external_reference": transaction.external_reference,
                    "created_at": transaction.created_at,
                },
            )
        except IntegrityError as e:
            if REFUND_REFERENCE_INDEX in str(e.orig):
                raise DuplicateGatewayReferenceError(
                    "refund_id", transaction.external_reference or "", transaction.payment_id
                ) from e
            raise

    async def add_many(self, transactions: list[Transaction]) -> None:
        for transaction in transactions:
            await self.add(transaction)

    async def list_by_payment(self, payment_id: str) -> list[Transaction]:
        result = await self._session.execute(
            text("""
                SELECT id, payment_id, type, amount, currency, description,
                       external_reference, created_at
                FROM transactions
                WHERE payment_id = :payment_id
                ORDER BY created_at, id
            """),
            {"payment_id": payment_id},
        )
        rows = result.fetchall()
        return [
            Transaction(
                id=row.id,
                payment_id=row.payment_id,
                type=TransactionType(row.type),
                amount=row.amount,
                currency=row.currency,
                description=row.description,
                external_reference=row.external_reference,
                created_at=row.created_at,
            )
            for row in rows
        ]
