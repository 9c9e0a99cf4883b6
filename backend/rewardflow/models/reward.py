from __future__ import annotations
import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, Numeric, DateTime, ForeignKey, Index, Uuid, func, text
from rewardflow.db import Base, JSONType, utcnow

_LIVE_ISSUANCE = text("status <> 'FAILED' AND submission_id IS NOT NULL")


class RewardIssuance(Base):
    """
    One durable record per issuance attempt.
    Idempotency: at most one non-FAILED row per (submission_id, type), enforced
    by a partial unique index. FAILED rows stay as history of earlier attempts.
    """
    __tablename__ = "reward_issuances"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), index=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    challenge_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("challenges.id", ondelete="SET NULL"), index=True, nullable=True)
    submission_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("submissions.id", ondelete="SET NULL"), nullable=True)

    type: Mapped[str] = mapped_column(String(16), nullable=False)  # points|sku|monetary
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(8), nullable=True)
    sku_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider: Mapped[str | None] = mapped_column(String(32), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING", index=True)  # PENDING|ISSUED|FAILED|CANCELLED
    external_transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    error: Mapped[str | None] = mapped_column(Text(), nullable=True)
    metadata_json: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index(
            "uq_reward_issuance_live_per_submission",
            "submission_id", "type",
            unique=True,
            postgresql_where=_LIVE_ISSUANCE,
            sqlite_where=_LIVE_ISSUANCE,
        ),
    )
