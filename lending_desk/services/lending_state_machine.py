"""Loan lifecycle: legal transitions and their inventory side effects.

Every public intent runs inside the caller's session and ends with either a
commit (loan row and ledger change together) or a rollback. Status changes
are claimed with a conditional UPDATE on the loan row so that two racing
decisions on the same loan cannot both apply their ledger effect. Events are
handed to the dispatcher only after the commit succeeded.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable

from sqlalchemy import update
from sqlalchemy.orm import Session

from lending_desk import config
from lending_desk.models.lending_models import Loan, Tenant
from lending_desk.services import event_sink, inventory_ledger, loan_service, tenant_store
from lending_desk.services.access_guard import APPROVE_REQUESTS, FULL_ACCESS, Grant
from lending_desk.services.errors import (
    BorrowerOverdue,
    Forbidden,
    IllegalTransition,
    ModeMismatch,
    Unauthorized,
    ValidationFailed,
)
from lending_desk.services.event_sink import EventDispatcher, LoanEvent
from lending_desk.services.inventory_ledger import COUNTED, UNIT, ItemRef
from lending_desk.services.loan_service import (
    BORROWED,
    PENDING,
    PENDING_APPROVAL,
    REJECTED,
    RETURNED,
)


LENDING_LOGGER = logging.getLogger("lending_desk.lending")

# (current status, intent) -> next status
TRANSITIONS = {
    (PENDING, "approve"): BORROWED,
    (PENDING, "reject"): REJECTED,
    (PENDING, "cancel"): REJECTED,
    (BORROWED, "return"): RETURNED,
    (BORROWED, "submit-return"): PENDING_APPROVAL,
    (PENDING_APPROVAL, "approve-return"): RETURNED,
    (PENDING_APPROVAL, "reject-return"): BORROWED,
}

CANCELLED_REASON = "cancelled"


class LendingStateMachine:
    def __init__(
        self,
        dispatcher: EventDispatcher | None = None,
        *,
        clock: Callable[[], datetime] = datetime.now,
        overdue_hours: int | None = None,
        block_overdue: bool | None = None,
        low_stock_threshold: int | None = None,
    ):
        self.dispatcher = dispatcher
        self.clock = clock
        self.overdue_hours = config.OVERDUE_HOURS if overdue_hours is None else overdue_hours
        self.block_overdue = config.BLOCK_OVERDUE_BORROWERS if block_overdue is None else block_overdue
        self.low_stock_threshold = config.LOW_STOCK_THRESHOLD if low_stock_threshold is None else low_stock_threshold

    # -- creation intents -------------------------------------------------

    def request(
        self,
        db: Session,
        tenant_id: int,
        ref: ItemRef,
        *,
        borrower_name: str,
        borrower_phone: str,
        quantity: int = 1,
        caller_id: str | None = None,
        expected_return_date: date | None = None,
        deposit_type: str | None = None,
        deposit_details: str | None = None,
        notes: str | None = None,
        is_signed: bool = False,
    ) -> Loan:
        try:
            tenant = tenant_store.get_active(db, tenant_id)
            if tenant.Mode != "request":
                raise ModeMismatch(f"Tenant {tenant_id} lends directly; requests are not accepted.")
            caller = (caller_id or "").strip() or None
            if tenant.RequireCallerID and not caller:
                raise ValidationFailed("callerID is required for this tenant.")
            name, phone = self._validate_borrower(borrower_name, borrower_phone)
            self._check_overdue(db, tenant, phone)
            item = inventory_ledger.check_available(db, tenant.TenantID, ref, quantity)

            now = self.clock()
            loan = self._new_loan(
                tenant,
                ref,
                name=name,
                phone=phone,
                quantity=quantity,
                caller_id=caller,
                expected_return_date=expected_return_date,
                deposit_type=deposit_type,
                deposit_details=deposit_details,
                notes=notes,
                is_signed=is_signed,
                now=now,
            )
            loan.Status = PENDING
            db.add(loan)
            db.flush()
            events = [self._event(event_sink.LOAN_REQUESTED, loan, actor=name, item_name=_item_label(item))]
            db.commit()
        except Exception:
            db.rollback()
            raise
        LENDING_LOGGER.info("Loan %s requested tenant=%s item=%s:%s", loan.LoanID, tenant_id, ref.kind, ref.item_id)
        self._publish(events)
        return loan

    def borrow(
        self,
        db: Session,
        tenant_id: int,
        ref: ItemRef,
        *,
        borrower_name: str,
        borrower_phone: str,
        quantity: int = 1,
        grant: Grant | None = None,
        caller_id: str | None = None,
        expected_return_date: date | None = None,
        deposit_type: str | None = None,
        deposit_details: str | None = None,
        notes: str | None = None,
        is_signed: bool = False,
    ) -> Loan:
        try:
            tenant = tenant_store.get_active(db, tenant_id)
            manager = grant is not None and grant.tenant_id == tenant.TenantID and grant.allows(FULL_ACCESS)
            if ref.kind == UNIT and not manager:
                self._require(grant, tenant.TenantID, FULL_ACCESS)
            if tenant.Mode != "direct" and not manager:
                raise ModeMismatch(f"Tenant {tenant_id} requires a request and approval before lending.")
            name, phone = self._validate_borrower(borrower_name, borrower_phone)
            self._check_overdue(db, tenant, phone)
            item = inventory_ledger.get_item(db, tenant.TenantID, ref)

            now = self.clock()
            loan = self._new_loan(
                tenant,
                ref,
                name=name,
                phone=phone,
                quantity=quantity,
                caller_id=(caller_id or "").strip() or None,
                expected_return_date=expected_return_date,
                deposit_type=deposit_type,
                deposit_details=deposit_details,
                notes=notes,
                is_signed=is_signed,
                now=now,
            )
            actor = grant.label if manager else name
            loan.DecidedBy = grant.label if manager else None
            loan.Status = PENDING
            db.add(loan)
            db.flush()
            events = self._hand_out(db, tenant, loan, item, now=now, actor=actor, action=event_sink.LOAN_BORROWED)
            db.commit()
        except Exception:
            db.rollback()
            raise
        LENDING_LOGGER.info("Loan %s %s tenant=%s item=%s:%s", loan.LoanID, loan.Status, tenant_id, ref.kind, ref.item_id)
        self._publish(events)
        return loan

    # -- request decisions ------------------------------------------------

    def approve(self, db: Session, loan_id: int, grant: Grant | None) -> Loan:
        try:
            loan = loan_service.get_loan(db, loan_id)
            tenant = tenant_store.get_active(db, loan.TenantID)
            self._require(grant, tenant.TenantID, APPROVE_REQUESTS)
            if loan.Status == BORROWED or (loan.Status == RETURNED and loan.IsConsumed and loan.DecidedAt):
                db.rollback()
                return loan
            self._ensure_legal(loan, "approve")
            if not self._claim(db, loan, PENDING, BORROWED):
                db.rollback()
                return self._settled(db, loan, BORROWED, "approve")

            now = self.clock()
            item = inventory_ledger.get_item(db, tenant.TenantID, _ref_of(loan))
            loan.DecidedBy = grant.label
            loan.DecidedAt = now
            events = self._hand_out(db, tenant, loan, item, now=now, actor=grant.label, action=event_sink.LOAN_APPROVED)
            db.commit()
        except Exception:
            db.rollback()
            raise
        LENDING_LOGGER.info("Loan %s approved by %s", loan.LoanID, grant.label)
        self._publish(events)
        return loan

    def reject(self, db: Session, loan_id: int, grant: Grant | None, reason: str | None = None) -> Loan:
        try:
            loan = loan_service.get_loan(db, loan_id)
            tenant = tenant_store.get_active(db, loan.TenantID)
            self._require(grant, tenant.TenantID, APPROVE_REQUESTS)
            if loan.Status == REJECTED:
                db.rollback()
                return loan
            self._ensure_legal(loan, "reject")
            if not self._claim(db, loan, PENDING, REJECTED):
                db.rollback()
                return self._settled(db, loan, REJECTED, "reject")
            loan.DecidedBy = grant.label
            loan.DecidedAt = self.clock()
            loan.RejectedReason = (reason or "").strip() or None
            events = [self._event(event_sink.LOAN_REJECTED, loan, actor=grant.label, reason=loan.RejectedReason)]
            db.commit()
        except Exception:
            db.rollback()
            raise
        LENDING_LOGGER.info("Loan %s rejected by %s", loan.LoanID, grant.label)
        self._publish(events)
        return loan

    def cancel(
        self,
        db: Session,
        loan_id: int,
        *,
        borrower_phone: str | None = None,
        grant: Grant | None = None,
    ) -> Loan:
        try:
            loan = loan_service.get_loan(db, loan_id)
            tenant = tenant_store.get_active(db, loan.TenantID)
            if grant is not None:
                self._require(grant, tenant.TenantID, APPROVE_REQUESTS)
                actor = grant.label
            else:
                phone = loan_service.normalize_phone(borrower_phone)
                if not phone or phone != loan.BorrowerPhone:
                    raise Unauthorized("Only the borrower or a manager can cancel this request.")
                actor = loan.BorrowerName
            if loan.Status == REJECTED and loan.RejectedReason == CANCELLED_REASON:
                db.rollback()
                return loan
            self._ensure_legal(loan, "cancel")
            if not self._claim(db, loan, PENDING, REJECTED):
                db.rollback()
                return self._settled(db, loan, REJECTED, "cancel")
            loan.RejectedReason = CANCELLED_REASON
            loan.DecidedBy = actor
            loan.DecidedAt = self.clock()
            events = [self._event(event_sink.LOAN_CANCELLED, loan, actor=actor)]
            db.commit()
        except Exception:
            db.rollback()
            raise
        self._publish(events)
        return loan

    # -- returns ----------------------------------------------------------

    def return_loan(
        self,
        db: Session,
        loan_id: int,
        grant: Grant | None,
        *,
        reported_status: str | None = None,
        fault_notes: str | None = None,
        evidence_url: str | None = None,
    ) -> Loan:
        """Manager marks a borrowed loan returned without the approval step.

        A faulty report takes the item out of circulation on release.
        """
        status = _reported_status(reported_status)
        try:
            loan = loan_service.get_loan(db, loan_id)
            tenant = tenant_store.get_active(db, loan.TenantID)
            self._require(grant, tenant.TenantID, FULL_ACCESS)
            if loan.Status == RETURNED:
                db.rollback()
                return loan
            self._ensure_legal(loan, "return")
            if not self._claim(db, loan, BORROWED, RETURNED):
                db.rollback()
                return self._settled(db, loan, RETURNED, "return")
            now = self.clock()
            self._record_return(loan, status, fault_notes, evidence_url, now=now)
            self._close_return(db, tenant, loan)
            loan.DecidedBy = grant.label
            loan.DecidedAt = now
            events = [self._event(event_sink.LOAN_RETURNED, loan, actor=grant.label, reportedStatus=status)]
            db.commit()
        except Exception:
            db.rollback()
            raise
        LENDING_LOGGER.info("Loan %s returned by %s", loan.LoanID, grant.label)
        self._publish(events)
        return loan

    def submit_return(
        self,
        db: Session,
        loan_id: int,
        *,
        reported_status: str | None = None,
        fault_notes: str | None = None,
        evidence_url: str | None = None,
    ) -> Loan:
        status = _reported_status(reported_status)
        try:
            loan = loan_service.get_loan(db, loan_id)
            tenant = tenant_store.get_active(db, loan.TenantID)
            needs_approval = tenant_store.requires_return_approval(tenant)
            target = PENDING_APPROVAL if needs_approval else RETURNED
            if loan.Status == target and not loan.IsConsumed:
                db.rollback()
                return loan
            self._ensure_legal(loan, "submit-return")
            if not self._claim(db, loan, BORROWED, target):
                db.rollback()
                return self._settled(db, loan, target, "submit-return")

            self._record_return(loan, status, fault_notes, evidence_url, now=self.clock())

            if needs_approval:
                events = [self._event(event_sink.RETURN_SUBMITTED, loan, actor=loan.BorrowerName)]
            else:
                self._close_return(db, tenant, loan)
                events = [self._event(event_sink.LOAN_RETURNED, loan, actor=loan.BorrowerName, reportedStatus=status)]
            db.commit()
        except Exception:
            db.rollback()
            raise
        LENDING_LOGGER.info("Loan %s return submitted -> %s", loan.LoanID, loan.Status)
        self._publish(events)
        return loan

    def approve_return(self, db: Session, loan_id: int, grant: Grant | None) -> Loan:
        try:
            loan = loan_service.get_loan(db, loan_id)
            tenant = tenant_store.get_active(db, loan.TenantID)
            self._require(grant, tenant.TenantID, APPROVE_REQUESTS)
            if loan.Status == RETURNED:
                db.rollback()
                return loan
            self._ensure_legal(loan, "approve-return")
            if not self._claim(db, loan, PENDING_APPROVAL, RETURNED):
                db.rollback()
                return self._settled(db, loan, RETURNED, "approve-return")
            self._close_return(db, tenant, loan)
            loan.DecidedBy = grant.label
            loan.DecidedAt = self.clock()
            events = [
                self._event(
                    event_sink.RETURN_APPROVED,
                    loan,
                    actor=grant.label,
                    reportedStatus=loan.ReportedStatus,
                )
            ]
            db.commit()
        except Exception:
            db.rollback()
            raise
        LENDING_LOGGER.info("Loan %s return approved by %s", loan.LoanID, grant.label)
        self._publish(events)
        return loan

    def reject_return(self, db: Session, loan_id: int, grant: Grant | None) -> Loan:
        try:
            loan = loan_service.get_loan(db, loan_id)
            tenant = tenant_store.get_active(db, loan.TenantID)
            self._require(grant, tenant.TenantID, APPROVE_REQUESTS)
            if loan.Status == BORROWED:
                db.rollback()
                return loan
            self._ensure_legal(loan, "reject-return")
            if not self._claim(db, loan, PENDING_APPROVAL, BORROWED):
                db.rollback()
                return self._settled(db, loan, BORROWED, "reject-return")
            # The reservation was never released, so only the return fields go.
            loan.ReturnDate = None
            loan.ReportedStatus = None
            loan.FaultNotes = None
            loan.EvidenceUrl = None
            loan.EvidenceUploadedAt = None
            events = [self._event(event_sink.RETURN_REJECTED, loan, actor=grant.label)]
            db.commit()
        except Exception:
            db.rollback()
            raise
        LENDING_LOGGER.info("Loan %s return rejected by %s", loan.LoanID, grant.label)
        self._publish(events)
        return loan

    def delete_closed(self, db: Session, loan_id: int, grant: Grant | None) -> None:
        try:
            loan = loan_service.get_loan(db, loan_id)
            self._require(grant, loan.TenantID, FULL_ACCESS)
            event = self._event(event_sink.LOAN_DELETED, loan, actor=grant.label, status=loan.Status)
            loan_service.delete_closed_loan(db, loan)
            db.commit()
        except Exception:
            db.rollback()
            raise
        self._publish([event])

    # -- helpers ----------------------------------------------------------

    def _hand_out(
        self,
        db: Session,
        tenant: Tenant,
        loan: Loan,
        item,
        *,
        now: datetime,
        actor: str | None,
        action: str,
    ) -> list[LoanEvent]:
        ref = _ref_of(loan)
        events: list[LoanEvent] = []
        loan.BorrowDate = now
        if ref.kind == COUNTED and item.IsConsumable:
            reservation = inventory_ledger.consume(db, tenant.TenantID, ref, loan.Quantity)
            loan.Status = RETURNED
            loan.IsConsumed = True
            loan.ReturnDate = now
            events.append(self._event(event_sink.LOAN_CONSUMED, loan, actor=actor, item_name=item.Name))
            if reservation.remaining is not None and reservation.remaining <= self.low_stock_threshold:
                events.append(
                    LoanEvent(
                        action=event_sink.LOW_STOCK,
                        tenant_id=tenant.TenantID,
                        loan_id=None,
                        item_kind=COUNTED,
                        item_id=item.CountedItemID,
                        details={"name": item.Name, "remaining": reservation.remaining},
                        occurred_at=now,
                    )
                )
            return events
        if ref.kind == COUNTED and loan.Quantity != 1:
            raise ValidationFailed("Non-consumable items are lent one at a time.")
        inventory_ledger.reserve(db, tenant.TenantID, ref, loan.Quantity)
        loan.Status = BORROWED
        events.append(self._event(action, loan, actor=actor, item_name=_item_label(item)))
        return events

    def _record_return(self, loan: Loan, status: str, fault_notes: str | None, evidence_url: str | None, *, now: datetime) -> None:
        loan.ReturnDate = now
        loan.ReportedStatus = status
        loan.FaultNotes = ((fault_notes or "").strip() or None) if status == "faulty" else None
        if evidence_url and evidence_url.strip():
            loan.EvidenceUrl = evidence_url.strip()
            loan.EvidenceUploadedAt = now

    def _close_return(self, db: Session, tenant: Tenant, loan: Loan) -> None:
        ref = _ref_of(loan)
        inventory_ledger.release(db, tenant.TenantID, ref, loan.Quantity)
        if loan.ReportedStatus == "faulty":
            inventory_ledger.set_status(db, tenant.TenantID, ref, "faulty")

    def _claim(self, db: Session, loan: Loan, from_status: str, to_status: str) -> bool:
        result = db.execute(
            update(Loan)
            .where(Loan.LoanID == loan.LoanID)
            .where(Loan.Status == from_status)
            .values(Status=to_status, UpdatedDate=self.clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        loan.Status = to_status
        loan.UpdatedDate = self.clock()
        return True

    def _settled(self, db: Session, loan: Loan, target: str, intent: str) -> Loan:
        db.refresh(loan)
        if loan.Status == target:
            return loan
        if intent == "approve" and loan.Status == RETURNED and loan.IsConsumed:
            return loan
        raise IllegalTransition(f"Loan {loan.LoanID} moved to {loan.Status}; cannot {intent}.")

    def _ensure_legal(self, loan: Loan, intent: str) -> None:
        if (loan.Status, intent) not in TRANSITIONS:
            raise IllegalTransition(f"Cannot {intent} a loan that is {loan.Status}.")

    def _require(self, grant: Grant | None, tenant_id: int, tier: str) -> None:
        if grant is None:
            raise Unauthorized("Credential required.")
        if grant.tenant_id != tenant_id:
            raise Forbidden("Credential belongs to another tenant.")
        if not grant.allows(tier):
            raise Forbidden(f"Permission '{tier}' required.")

    def _validate_borrower(self, borrower_name: str, borrower_phone: str) -> tuple[str, str]:
        name = (borrower_name or "").strip()
        phone = loan_service.normalize_phone(borrower_phone)
        if not name or not phone:
            raise ValidationFailed("Borrower name and phone are required.")
        return name, phone

    def _check_overdue(self, db: Session, tenant: Tenant, phone: str) -> None:
        if not self.block_overdue:
            return
        overdue = loan_service.find_overdue_loans(
            db,
            tenant.TenantID,
            phone,
            now=self.clock(),
            overdue_hours=self.overdue_hours,
        )
        if overdue:
            raise BorrowerOverdue(f"Borrower has {len(overdue)} overdue loan(s); return them first.")

    def _new_loan(self, tenant: Tenant, ref: ItemRef, *, name: str, phone: str, quantity: int, caller_id, expected_return_date, deposit_type, deposit_details, notes, is_signed: bool, now: datetime) -> Loan:
        qty = int(quantity or 1)
        if qty < 1:
            raise ValidationFailed("quantity must be at least 1.")
        return Loan(
            TenantID=tenant.TenantID,
            ItemKind=ref.kind,
            CountedItemID=ref.item_id if ref.kind == COUNTED else None,
            UnitItemID=ref.item_id if ref.kind == UNIT else None,
            Quantity=qty,
            BorrowerName=name,
            BorrowerPhone=phone,
            CallerID=caller_id,
            RequestedAt=now,
            ExpectedReturnDate=expected_return_date,
            DepositType=(deposit_type or "").strip() or None,
            DepositDetails=(deposit_details or "").strip() or None,
            IsSigned=bool(is_signed),
            SignedAt=now if is_signed else None,
            IsConsumed=False,
            Notes=(notes or "").strip() or None,
            CreatedDate=now,
            UpdatedDate=now,
        )

    def _event(self, action: str, loan: Loan, *, actor: str | None, item_name: str | None = None, **details) -> LoanEvent:
        payload = {"borrowerName": loan.BorrowerName, "status": loan.Status}
        if item_name:
            payload["itemName"] = item_name
        payload.update({key: value for key, value in details.items() if value is not None})
        return LoanEvent(
            action=action,
            tenant_id=loan.TenantID,
            loan_id=loan.LoanID,
            actor=actor,
            item_kind=loan.ItemKind,
            item_id=loan.CountedItemID if loan.ItemKind == COUNTED else loan.UnitItemID,
            details=payload,
            occurred_at=self.clock(),
        )

    def _publish(self, events: list[LoanEvent]) -> None:
        if self.dispatcher is None or not events:
            return
        try:
            self.dispatcher.dispatch(events)
        except Exception:
            LENDING_LOGGER.exception("Event dispatch failed for %s event(s)", len(events))


def _reported_status(reported_status: str | None) -> str:
    status = (reported_status or "working").strip().lower()
    if status not in inventory_ledger.ITEM_STATUSES:
        raise ValidationFailed(f"reportedStatus must be one of {sorted(inventory_ledger.ITEM_STATUSES)}.")
    return status


def _ref_of(loan: Loan) -> ItemRef:
    if loan.ItemKind == COUNTED:
        return ItemRef(COUNTED, loan.CountedItemID)
    return ItemRef(UNIT, loan.UnitItemID)


def _item_label(item) -> str | None:
    name = getattr(item, "Name", None)
    return name or getattr(item, "UnitCode", None)
