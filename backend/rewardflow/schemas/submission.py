from __future__ import annotations
from pydantic import Field
from uuid import UUID
from datetime import datetime

from rewardflow.schemas.base import CamelModel


class SubmissionCreate(CamelModel):
    text_content: str | None = None
    file_urls: list[str] = Field(default_factory=list, max_length=10)
    link_url: str | None = None


class SubmissionPublic(CamelModel):
    id: UUID
    activity_id: UUID
    user_id: UUID
    enrollment_id: UUID
    status: str
    text_content: str | None = None
    file_urls: list[str] = Field(default_factory=list)
    link_url: str | None = None
    submitted_at: datetime
    manager_reviewed_at: datetime | None = None
    manager_reviewed_by: UUID | None = None
    manager_notes: str | None = None
    reviewed_at: datetime | None = None
    reviewed_by: UUID | None = None
    review_notes: str | None = None
    points_awarded: int | None = None
    reward_issued: bool = False
    reward_issuance_id: UUID | None = None
