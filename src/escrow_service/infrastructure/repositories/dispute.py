import json
from datetime import datetime
from typing import Any, cast

from sqlalchemy import CursorResult, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_service.domain.exceptions import ConcurrentModificationError, DuplicateDisputeError
from escrow_service.domain.models import Dispute, DisputeRole, Evidence
from escrow_service.domain.status import DisputeStatus
from escrow_service.infrastructure.repositories.payment import load_json


DISPUTE_COLUMNS = """
    id, payment_id, raised_by, raised_by_role, reason, category, disputed_amount,
    status, evidence, resolution_notes, resolved_by, resolved_at, auto_resolve_at,
    version, created_at, updated_at
"""

ACTIVE_DISPUTE_INDEX = "uq_disputes_active_payment"


def _row_to_dispute(row: Any) -> Dispute:
    return Dispute(
        id=row.id,
        payment_id=row.payment_id,
        raised_by=row.raised_by,
        raised_by_role=DisputeRole(row.raised_by_role),
        reason=row.reason,
        category=row.category,
        disputed_amount=row.disputed_amount,
        status=DisputeStatus(row.status),
        evidence=[Evidence.from_dict(item) for item in load_json(row.evidence) or []],
        resolution_notes=row.resolution_notes,
        resolved_by=row.resolved_by,
        resolved_at=row.resolved_at,
        auto_resolve_at=row.auto_resolve_at,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class DisputeRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, dispute_id: str) -> Dispute | None:
        result = await self._session.execute(
            text(f"SELECT {DISPUTE_COLUMNS} FROM disputes WHERE id = :id"),
            {"id": dispute_id},
        )
        row = result.fetchone()
        if not row:
            return None
        return _row_to_dispute(row)

    async def get_active_for_payment(self, payment_id: str) -> Dispute | None:
        result = await self._session.execute(
            text(f"""
                SELECT {DISPUTE_COLUMNS}
                FROM disputes
                WHERE payment_id = :payment_id AND status IN ('OPEN', 'UNDER_REVIEW')
            """),
            {"payment_id": payment_id},
        )
        row = result.fetchone()
        if not row:
            return None
        return _row_to_dispute(row)

    async def list_by_payment(self, payment_id: str) -> list[Dispute]:
        result = await self._session.execute(
            text(f"""
                SELECT {DISPUTE_COLUMNS}
                FROM disputes
                WHERE payment_id = :payment_id
                ORDER BY created_at DESC
            """),
            {"payment_id": payment_id},
        )
        return [_row_to_dispute(row) for row in result.fetchall()]

    async def list_by_status(self, status: DisputeStatus, limit: int = 100) -> list[Dispute]:
        result = await self._session.execute(
            text(f"""
                SELECT {DISPUTE_COLUMNS}
                FROM disputes
                WHERE status = :status
                ORDER BY created_at DESC
                LIMIT :limit
            """),
            {"status": status.value, "limit": limit},
        )
        return [_row_to_dispute(row) for row in result.fetchall()]

    async def list_due_for_auto_resolve(self, now: datetime, limit: int = 500) -> list[Dispute]:
        result = await self._session.execute(
            text(f"""
                SELECT {DISPUTE_COLUMNS}
                FROM disputes
                WHERE status = 'OPEN' AND auto_resolve_at < :now
                ORDER BY auto_resolve_at
                LIMIT :limit
            """),
            {"now": now, "limit": limit},
        )
        return [_row_to_dispute(row) for row in result.fetchall()]

    async def count_active(self) -> int:
        result = await self._session.execute(
            text("SELECT COUNT(*) FROM disputes WHERE status IN ('OPEN', 'UNDER_REVIEW')")
        )
        return int(result.scalar_one())

    async def add(self, dispute: Dispute) -> None:
        """Insert a dispute. The partial unique index rejects a second active one per payment."""
        try:
            await self._session.execute(
                text("""
                    INSERT INTO disputes
                        (id, payment_id, raised_by, raised_by_role, reason, category,
                         disputed_amount, status, evidence, resolution_notes,
                         resolved_by, resolved_at, auto_resolve_at, version,
                         created_at, updated_at)
                    VALUES
                        (:id, :payment_id, :raised_by, :raised_by_role, :reason, :category,
                         :disputed_amount, :status, :evidence, :resolution_notes,
                         :resolved_by, :resolved_at, :auto_resolve_at, :version,
                         :created_at, :updated_at)
                """),
                self._params(dispute),
            )
        except IntegrityError as e:
            if ACTIVE_DISPUTE_INDEX in str(e.orig):
                raise DuplicateDisputeError(dispute.payment_id) from e
            raise

    async def update(self, dispute: Dispute) -> None:
        params = self._params(dispute)
        params["expected_version"] = dispute.version
        result = cast(
            "CursorResult[Any]",
            await self._session.execute(
                text("""
                    UPDATE disputes
                    SET status = :status,
                        evidence = :evidence,
                        resolution_notes = :resolution_notes,
                        resolved_by = :resolved_by,
                        resolved_at = :resolved_at,
                        version = version + 1,
                        updated_at = :updated_at
                    WHERE id = :id AND version = :expected_version
                """),
                params,
            ),
        )
        if (result.rowcount or 0) == 0:
            raise ConcurrentModificationError("Dispute", dispute.id, dispute.version)
        dispute.version += 1

    @staticmethod
    def _params(dispute: Dispute) -> dict[str, Any]:
        return {
            "id": dispute.id,
            "payment_id": dispute.payment_id,
            "raised_by": dispute.raised_by,
            "raised_by_role": dispute.raised_by_role.value,
            "reason": dispute.reason,
            "category": dispute.category,
            "disputed_amount": dispute.disputed_amount,
            "status": dispute.status.value,
            "evidence": json.dumps([item.to_dict() for item in dispute.evidence]),
            "resolution_notes": dispute.resolution_notes,
            "resolved_by": dispute.resolved_by,
            "resolved_at": dispute.resolved_at,
            "auto_resolve_at": dispute.auto_resolve_at,
            "version": dispute.version,
            "created_at": dispute.created_at,
            "updated_at": dispute.updated_at,
        }
