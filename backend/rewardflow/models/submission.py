from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, Integer, Boolean, DateTime, ForeignKey, Uuid, func
from rewardflow.db import Base, JSONType, utcnow


class Submission(Base):
    __tablename__ = "submissions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    activity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("activities.id", ondelete="CASCADE"), index=True, nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    enrollment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("enrollments.id", ondelete="CASCADE"), index=True, nullable=False
    )

    # PENDING | MANAGER_APPROVED | NEEDS_REVISION | APPROVED | REJECTED
    status: Mapped[str] = mapped_column(String(24), nullable=False, default="PENDING", index=True)

    # Payload, opaque to the review workflow
    text_content: Mapped[str | None] = mapped_column(Text(), nullable=True)
    file_urls: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    link_url: Mapped[str | None] = mapped_column(Text(), nullable=True)

    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    manager_reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    manager_reviewed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    manager_notes: Mapped[str | None] = mapped_column(Text(), nullable=True)

    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text(), nullable=True)

    points_awarded: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reward_issued: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reward_issuance_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
