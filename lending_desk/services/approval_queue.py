from __future__ import annotations

from typing import Literal

from sqlalchemy.orm import Session

from lending_desk.models.lending_models import Loan
from lending_desk.services import access_guard, loan_service, tenant_store
from lending_desk.services.errors import IllegalTransition, ValidationFailed
from lending_desk.services.lending_state_machine import LendingStateMachine
from lending_desk.services.loan_service import (
    BORROWED,
    PENDING,
    PENDING_APPROVAL,
    QUEUE_STATUSES,
    REJECTED,
    RETURNED,
)


Decision = Literal["approve", "reject"]
DECISIONS = {"approve", "reject"}


class ApprovalQueue:
    """Manager-facing view over loans waiting for a decision."""

    def __init__(self, machine: LendingStateMachine):
        self.machine = machine

    def list(self, db: Session, tenant_id: int, status: str | None = None) -> list[Loan]:
        tenant_store.get(db, tenant_id)
        return loan_service.list_loans(db, tenant_id, status, allowed=QUEUE_STATUSES)

    def decide(
        self,
        db: Session,
        loan_id: int,
        decision: Decision,
        credential: str | None,
        *,
        reason: str | None = None,
    ) -> Loan:
        action = _normalize_decision(decision)
        loan = loan_service.get_loan(db, loan_id)
        grant = access_guard.authorize(db, loan.TenantID, credential, access_guard.APPROVE_REQUESTS)

        status = loan.Status
        if status == PENDING_APPROVAL:
            return self._decide_return(db, loan_id, action, grant)
        if status == PENDING or (action == "approve" and status == BORROWED) or (action == "reject" and status == REJECTED):
            if action == "approve":
                return self.machine.approve(db, loan_id, grant)
            return self.machine.reject(db, loan_id, grant, reason)
        if action == "approve" and status == RETURNED and loan.IsConsumed and loan.DecidedAt:
            return self.machine.approve(db, loan_id, grant)
        raise IllegalTransition(f"Loan {loan_id} is {status}; nothing to {action}.")

    def decide_return(self, db: Session, loan_id: int, decision: Decision, credential: str | None) -> Loan:
        action = _normalize_decision(decision)
        loan = loan_service.get_loan(db, loan_id)
        grant = access_guard.authorize(db, loan.TenantID, credential, access_guard.APPROVE_REQUESTS)
        return self._decide_return(db, loan_id, action, grant)

    def _decide_return(self, db: Session, loan_id: int, action: str, grant: access_guard.Grant) -> Loan:
        if action == "approve":
            return self.machine.approve_return(db, loan_id, grant)
        return self.machine.reject_return(db, loan_id, grant)


def _normalize_decision(decision: str) -> str:
    action = (decision or "").strip().lower()
    if action not in DECISIONS:
        raise ValidationFailed("action must be approve or reject.")
    return action
