"""Idempotency claim ledger shared by the check-in and webhook pipelines."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID

from truckstamp_api.db.base import Base


class ClaimScopeEnum(str, Enum):
    CHECKIN = "checkin"
    STRIPE_EVENT = "stripe_event"


class ClaimStateEnum(str, Enum):
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"


class IdempotencyClaim(Base):
    """Exclusivity record keyed by a natural idempotency key.

    Uniqueness of ``key`` is enforced by the database, so concurrent inserts for
    the same key have exactly one winner.
    """

    __tablename__ = "idempotency_claims"
    __table_args__ = (
        UniqueConstraint("key", name="uq_idempotency_claims_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    key = Column(String(255), nullable=False)
    scope = Column(
        SqlEnum(
            ClaimScopeEnum,
            name="idempotency_claim_scope_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    state = Column(
        SqlEnum(
            ClaimStateEnum,
            name="idempotency_claim_state_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=ClaimStateEnum.CLAIMED,
        server_default=ClaimStateEnum.CLAIMED.value,
    )
    result_ref = Column(String(255), nullable=True)
    lease_id = Column(String(64), nullable=True)
    attempt_count = Column(Integer, nullable=False, default=1, server_default="1")
    last_error = Column(Text, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
