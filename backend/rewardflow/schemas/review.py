from __future__ import annotations
from typing import Literal
from pydantic import Field

from rewardflow.schemas.base import CamelModel
from rewardflow.schemas.reward import RewardInput, RewardPublic
from rewardflow.schemas.submission import SubmissionPublic


class ReviewRequest(CamelModel):
    # Optional here so a missing status is reported as a domain validation error
    status: Literal["APPROVED", "REJECTED"] | None = None
    review_notes: str | None = Field(default=None, max_length=2000)
    points_awarded: int | None = Field(default=None, ge=0)
    reward: RewardInput | None = None


class ManagerReviewRequest(CamelModel):
    action: Literal["approve", "reject"]
    notes: str | None = Field(default=None, max_length=2000)


class ReviewResult(SubmissionPublic):
    """The updated submission, plus what happened to its reward."""
    admin_override: bool = False
    reward: RewardPublic | None = None
