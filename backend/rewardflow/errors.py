"""
Domain error taxonomy for the review / reward workflow.

Routes never build HTTP errors for these by hand: main.py registers one
handler that renders any DomainError as {"detail", "code"} with the class'
status code.
"""
from __future__ import annotations


class DomainError(Exception):
    status_code: int = 400
    code: str = "domain_error"
    default_message: str = "Request could not be processed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(DomainError):
    # Never distinguishes "forbidden" from "missing" across tenants
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class NotAuthorized(DomainError):
    status_code = 403
    code = "not_authorized"
    default_message = "Not authorized"


class SelfApprovalForbidden(DomainError):
    status_code = 403
    code = "self_approval_forbidden"
    default_message = "You cannot review your own submission"


class NotAssignedToChallenge(DomainError):
    status_code = 403
    code = "not_assigned_to_challenge"
    default_message = "You are not assigned to this challenge"


class AlreadyReviewed(DomainError):
    status_code = 409
    code = "already_reviewed"
    default_message = "Submission is not in a reviewable state"


class ValidationError(DomainError):
    status_code = 400
    code = "validation_error"
    default_message = "Invalid request"


class BudgetExceeded(DomainError):
    status_code = 409
    code = "budget_exceeded"
    default_message = "Points budget exceeded"


class IssuanceFailed(DomainError):
    status_code = 502
    code = "issuance_failed"
    default_message = "Reward provider could not issue the reward"
