from __future__ import annotations

import re
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from lending_desk.models.lending_models import Loan, Tenant
from lending_desk.services.errors import IllegalTransition, LoanNotFound, ValidationFailed


PENDING = "pending"
BORROWED = "borrowed"
PENDING_APPROVAL = "pending_approval"
RETURNED = "returned"
REJECTED = "rejected"

LOAN_STATUSES = {PENDING, BORROWED, PENDING_APPROVAL, RETURNED, REJECTED}
OPEN_STATUSES = {PENDING, BORROWED, PENDING_APPROVAL}
RESERVING_STATUSES = {BORROWED, PENDING_APPROVAL}
TERMINAL_STATUSES = {RETURNED, REJECTED}
QUEUE_STATUSES = {PENDING, PENDING_APPROVAL}


def normalize_phone(raw: str | None) -> str:
    digits = re.sub(r"\D", "", raw or "")
    if digits.startswith("972") and len(digits) > 9:
        digits = "0" + digits[3:]
    return digits


def get_loan(db: Session, loan_id: int, tenant_id: int | None = None) -> Loan:
    loan = db.get(Loan, loan_id)
    if not loan or (tenant_id is not None and loan.TenantID != tenant_id):
        raise LoanNotFound(f"Loan {loan_id} not found.")
    return loan


def _normalize_status_filter(status: str | None, allowed: set[str]) -> set[str]:
    if not status:
        return set(allowed)
    wanted = {part.strip().lower() for part in status.split(",") if part.strip()}
    unknown = wanted - LOAN_STATUSES
    if unknown:
        raise ValidationFailed(f"Unknown loan status: {', '.join(sorted(unknown))}")
    return wanted & allowed


def list_loans(
    db: Session,
    tenant_id: int,
    status: str | None = None,
    *,
    phone: str | None = None,
    allowed: set[str] | None = None,
) -> list[Loan]:
    statuses = _normalize_status_filter(status, allowed or LOAN_STATUSES)
    if not statuses:
        return []
    stmt = (
        select(Loan)
        .where(Loan.TenantID == tenant_id)
        .where(Loan.Status.in_(sorted(statuses)))
        .order_by(Loan.RequestedAt, Loan.LoanID)
    )
    if phone:
        stmt = stmt.where(Loan.BorrowerPhone == normalize_phone(phone))
    return list(db.execute(stmt).scalars().all())


def find_overdue_loans(
    db: Session,
    tenant_id: int,
    phone: str,
    *,
    now: datetime,
    overdue_hours: int,
) -> list[Loan]:
    normalized = normalize_phone(phone)
    if not normalized:
        return []
    threshold = now - timedelta(hours=max(overdue_hours, 0))
    return list(
        db.execute(
            select(Loan)
            .where(Loan.TenantID == tenant_id)
            .where(Loan.BorrowerPhone == normalized)
            .where(Loan.Status == BORROWED)
            .where(Loan.IsConsumed.is_(False))
            .where(Loan.BorrowDate < threshold)
            .order_by(Loan.BorrowDate, Loan.LoanID)
        ).scalars().all()
    )


def delete_closed_loan(db: Session, loan: Loan) -> None:
    if loan.Status not in TERMINAL_STATUSES:
        raise IllegalTransition(f"Loan {loan.LoanID} is still open ({loan.Status}) and cannot be deleted.")
    db.delete(loan)


def item_name(loan: Loan) -> str | None:
    if loan.CountedItem is not None:
        return loan.CountedItem.Name
    if loan.UnitItem is not None:
        return loan.UnitItem.Name or loan.UnitItem.UnitCode
    return None


def serialize_loan(loan: Loan, tenant: Tenant | None = None) -> dict:
    payload = {
        "loanID": loan.LoanID,
        "tenantID": loan.TenantID,
        "item": {
            "kind": loan.ItemKind,
            "itemID": loan.CountedItemID if loan.ItemKind == "counted" else loan.UnitItemID,
            "name": item_name(loan),
        },
        "quantity": loan.Quantity,
        "borrowerName": loan.BorrowerName,
        "borrowerPhone": loan.BorrowerPhone,
        "callerID": loan.CallerID,
        "status": loan.Status,
        "isOpen": loan.Status in OPEN_STATUSES,
        "isConsumed": bool(loan.IsConsumed),
        "requestedAt": loan.RequestedAt,
        "borrowDate": loan.BorrowDate,
        "expectedReturnDate": loan.ExpectedReturnDate,
        "returnDate": loan.ReturnDate,
        "deposit": {
            "type": loan.DepositType,
            "details": loan.DepositDetails,
        } if loan.DepositType or loan.DepositDetails else None,
        "isSigned": bool(loan.IsSigned),
        "signedAt": loan.SignedAt,
        "faultReport": {
            "reportedStatus": loan.ReportedStatus,
            "notes": loan.FaultNotes,
        } if loan.ReportedStatus else None,
        "evidenceUrl": loan.EvidenceUrl,
        "evidenceUploadedAt": loan.EvidenceUploadedAt,
        "decidedBy": loan.DecidedBy,
        "decidedAt": loan.DecidedAt,
        "rejectedReason": loan.RejectedReason,
        "notes": loan.Notes,
        "updatedDate": loan.UpdatedDate,
    }
    if tenant is not None and tenant.AccessCode and loan.Status == BORROWED:
        payload["accessCode"] = tenant.AccessCode
    return payload
