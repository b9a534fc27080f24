import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.orm import Session

from lending_desk import config
from lending_desk.db.base import Base
from lending_desk.db.deps import get_lending_db
from lending_desk.db.session import SessionLocalLending, engine_lending
from lending_desk.models.lending_models import Loan, NotificationQueue
from lending_desk.schemas.inventory import CountedItemCreate, ItemRepairRequest, ItemStatusUpdate, UnitItemCreate
from lending_desk.schemas.loans import (
    CancelLoanRequest,
    CreateLoanDto,
    CredentialOnlyRequest,
    LoanDecisionRequest,
    ReturnLoanRequest,
)
from lending_desk.schemas.tenants import (
    CreateTenantDto,
    TenantCredentialUpsert,
    TenantModeUpdate,
    TenantSettingsUpdate,
)
from lending_desk.services import access_guard, inventory_ledger, loan_service, reconciliation_service, tenant_store
from lending_desk.services.approval_queue import ApprovalQueue
from lending_desk.services.errors import LendingError, ValidationFailed
from lending_desk.services.event_sink import build_default_dispatcher
from lending_desk.services.inventory_ledger import COUNTED, UNIT, ItemRef
from lending_desk.services.lending_state_machine import LendingStateMachine

config.configure_logging()
API_LOGGER = logging.getLogger("lending_desk.api")

machine = LendingStateMachine(
    build_default_dispatcher(
        SessionLocalLending,
        mode=config.EVENT_DISPATCH_MODE,
        workers=config.EVENT_WORKERS,
    )
)
queue = ApprovalQueue(machine)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    Base.metadata.create_all(bind=engine_lending)
    yield
    if machine.dispatcher is not None:
        machine.dispatcher.shutdown(wait=True)


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=config.CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)


@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    if exc.status_code >= 500:
        API_LOGGER.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    headers = {}
    retry_after = getattr(exc, "retry_after", None)
    if retry_after:
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
        headers=headers or None,
    )


def _credential(body_value: str | None, header_value: str | None) -> str | None:
    return (body_value or "").strip() or (header_value or "").strip() or None


def _serialize_loan(loan: Loan) -> dict:
    return loan_service.serialize_loan(loan, loan.Tenant)


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_lending_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


# -- loans ----------------------------------------------------------------


@app.post("/api/loans")
def create_loan(
    payload: CreateLoanDto,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    ref = ItemRef(payload.item.kind, payload.item.itemID)
    deposit = payload.deposit
    common = dict(
        borrower_name=payload.borrowerName,
        borrower_phone=payload.borrowerPhone,
        quantity=payload.quantity,
        caller_id=payload.callerID,
        expected_return_date=payload.expectedReturnDate,
        deposit_type=deposit.type if deposit else None,
        deposit_details=deposit.details if deposit else None,
        notes=payload.notes,
        is_signed=payload.isSigned,
    )
    if payload.intent == "request":
        loan = machine.request(db, payload.tenantID, ref, **common)
    else:
        presented = _credential(payload.credential, x_tenant_credential)
        grant = None
        if presented:
            grant = access_guard.authorize(db, payload.tenantID, presented, access_guard.VIEW_ONLY)
        loan = machine.borrow(db, payload.tenantID, ref, grant=grant, **common)
    return {"message": f"Loan {loan.Status}", "loan": _serialize_loan(loan)}


@app.get("/api/loans/{loan_id}")
def get_loan(
    loan_id: int,
    phone: str | None = Query(None),
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    loan = loan_service.get_loan(db, loan_id)
    normalized = loan_service.normalize_phone(phone)
    if not normalized or normalized != loan.BorrowerPhone:
        access_guard.authorize(db, loan.TenantID, x_tenant_credential, access_guard.VIEW_ONLY, require_active=False)
    return _serialize_loan(loan)


@app.post("/api/loans/{loan_id}/decide")
def decide_loan(
    loan_id: int,
    payload: LoanDecisionRequest,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    loan = queue.decide(
        db,
        loan_id,
        payload.action,
        _credential(payload.credential, x_tenant_credential),
        reason=payload.reason,
    )
    return {"message": f"Loan {loan.Status}", "loan": _serialize_loan(loan)}


@app.post("/api/loans/{loan_id}/cancel")
def cancel_loan(
    loan_id: int,
    payload: CancelLoanRequest,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    presented = _credential(payload.credential, x_tenant_credential)
    grant = None
    if presented:
        loan = loan_service.get_loan(db, loan_id)
        grant = access_guard.authorize(db, loan.TenantID, presented, access_guard.APPROVE_REQUESTS)
    loan = machine.cancel(db, loan_id, borrower_phone=payload.borrowerPhone, grant=grant)
    return {"message": "Request cancelled", "loan": _serialize_loan(loan)}


@app.post("/api/loans/{loan_id}/return")
def return_loan(
    loan_id: int,
    payload: ReturnLoanRequest,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    report = payload.faultReport
    presented = _credential(payload.credential, x_tenant_credential)
    if presented:
        loan = loan_service.get_loan(db, loan_id)
        grant = access_guard.authorize(db, loan.TenantID, presented, access_guard.FULL_ACCESS)
        loan = machine.return_loan(
            db,
            loan_id,
            grant,
            reported_status=report.reportedStatus if report else None,
            fault_notes=report.notes if report else None,
            evidence_url=payload.evidenceUrl,
        )
    else:
        loan = machine.submit_return(
            db,
            loan_id,
            reported_status=report.reportedStatus if report else None,
            fault_notes=report.notes if report else None,
            evidence_url=payload.evidenceUrl,
        )
    return {"message": f"Loan {loan.Status}", "loan": _serialize_loan(loan)}


@app.post("/api/loans/{loan_id}/decide-return")
def decide_return(
    loan_id: int,
    payload: LoanDecisionRequest,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    loan = queue.decide_return(db, loan_id, payload.action, _credential(payload.credential, x_tenant_credential))
    return {"message": f"Loan {loan.Status}", "loan": _serialize_loan(loan)}


@app.delete("/api/loans/{loan_id}")
def delete_loan(
    loan_id: int,
    payload: CredentialOnlyRequest | None = None,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    loan = loan_service.get_loan(db, loan_id)
    presented = _credential(payload.credential if payload else None, x_tenant_credential)
    grant = access_guard.authorize(db, loan.TenantID, presented, access_guard.FULL_ACCESS, require_active=False)
    machine.delete_closed(db, loan_id, grant)
    return {"message": "Loan deleted", "loanID": loan_id}


# -- tenant views ---------------------------------------------------------


@app.get("/api/tenants")
def list_tenants(db: Session = Depends(get_lending_db)):
    return [tenant_store.serialize_tenant(tenant) for tenant in tenant_store.list_tenants(db)]


@app.get("/api/tenants/{tenant_id}")
def get_tenant(
    tenant_id: int,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    tenant = tenant_store.get(db, tenant_id)
    include_code = False
    if x_tenant_credential:
        access_guard.authorize(db, tenant_id, x_tenant_credential, access_guard.VIEW_ONLY, require_active=False)
        include_code = True
    return tenant_store.serialize_tenant(tenant, include_access_code=include_code)


@app.get("/api/tenants/{tenant_id}/inventory")
def get_inventory(tenant_id: int, db: Session = Depends(get_lending_db)):
    tenant_store.get(db, tenant_id)
    counted, units = inventory_ledger.list_inventory(db, tenant_id)
    return {
        "tenantID": tenant_id,
        "counted": [inventory_ledger.serialize_counted_item(item) for item in counted],
        "units": [inventory_ledger.serialize_unit_item(unit) for unit in units],
    }


@app.get("/api/tenants/{tenant_id}/loans")
def get_tenant_loans(
    tenant_id: int,
    status: str | None = Query(None),
    phone: str | None = Query(None),
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    access_guard.authorize(db, tenant_id, x_tenant_credential, access_guard.VIEW_ONLY, require_active=False)
    loans = loan_service.list_loans(db, tenant_id, status, phone=phone)
    return [_serialize_loan(loan) for loan in loans]


@app.get("/api/tenants/{tenant_id}/queue")
def get_tenant_queue(
    tenant_id: int,
    status: str | None = Query(None),
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    access_guard.authorize(db, tenant_id, x_tenant_credential, access_guard.VIEW_ONLY, require_active=False)
    return [_serialize_loan(loan) for loan in queue.list(db, tenant_id, status)]


@app.get("/api/tenants/{tenant_id}/reconciliation")
def get_reconciliation(
    tenant_id: int,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    access_guard.authorize(db, tenant_id, x_tenant_credential, access_guard.VIEW_ONLY, require_active=False)
    discrepancies = reconciliation_service.verify(db, tenant_id)
    return {
        "tenantID": tenant_id,
        "ok": not discrepancies,
        "discrepancies": [item.to_dict() for item in discrepancies],
    }


@app.get("/api/tenants/{tenant_id}/overdue")
def get_overdue(tenant_id: int, phone: str = Query(...), db: Session = Depends(get_lending_db)):
    tenant_store.get(db, tenant_id)
    loans = loan_service.find_overdue_loans(
        db,
        tenant_id,
        phone,
        now=machine.clock(),
        overdue_hours=machine.overdue_hours,
    )
    return {
        "tenantID": tenant_id,
        "hasOverdue": bool(loans),
        "loans": [
            {
                "loanID": loan.LoanID,
                "itemName": loan_service.item_name(loan),
                "borrowDate": loan.BorrowDate,
                "expectedReturnDate": loan.ExpectedReturnDate,
            }
            for loan in loans
        ],
    }


# -- tenant administration ------------------------------------------------


@app.post("/api/tenants")
def create_tenant(
    payload: CreateTenantDto,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    access_guard.require_admin(_credential(payload.credential, x_tenant_credential))
    tenant = tenant_store.create_tenant(
        db,
        display_name=payload.displayName,
        kind=payload.kind,
        mode=payload.mode,
        access_code=payload.accessCode,
        require_caller_id=payload.requireCallerID,
        require_return_approval=payload.requireReturnApproval,
    )
    if payload.managerSecret:
        tenant_store.set_credential(
            db,
            tenant.TenantID,
            payload.managerSecret,
            tier=access_guard.FULL_ACCESS,
            label=payload.managerLabel,
        )
    db.commit()
    API_LOGGER.info("Tenant %s created (%s, mode=%s)", tenant.TenantID, tenant.DisplayName, tenant.Mode)
    return {"message": "Tenant created", "tenant": tenant_store.serialize_tenant(tenant, include_access_code=True)}


@app.put("/api/tenants/{tenant_id}/settings")
def update_tenant_settings(
    tenant_id: int,
    payload: TenantSettingsUpdate,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    access_guard.authorize(db, tenant_id, _credential(payload.credential, x_tenant_credential), access_guard.FULL_ACCESS)
    changes = payload.model_dump(exclude_unset=True, exclude={"credential"})
    tenant = tenant_store.update_settings(db, tenant_id, changes)
    db.commit()
    return {"message": "Settings updated", "tenant": tenant_store.serialize_tenant(tenant, include_access_code=True)}


@app.put("/api/tenants/{tenant_id}/mode")
def update_tenant_mode(
    tenant_id: int,
    payload: TenantModeUpdate,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    access_guard.authorize(db, tenant_id, _credential(payload.credential, x_tenant_credential), access_guard.FULL_ACCESS)
    tenant = tenant_store.set_mode(db, tenant_id, payload.mode)
    db.commit()
    return {"message": f"Mode set to {tenant.Mode}", "tenant": tenant_store.serialize_tenant(tenant)}


@app.put("/api/tenants/{tenant_id}/credentials")
def upsert_tenant_credential(
    tenant_id: int,
    payload: TenantCredentialUpsert,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    access_guard.authorize(db, tenant_id, _credential(payload.credential, x_tenant_credential), access_guard.FULL_ACCESS)
    credential = tenant_store.set_credential(db, tenant_id, payload.secret, tier=payload.tier, label=payload.label)
    db.commit()
    return {"message": "Credential saved", "label": credential.Label, "tier": credential.Tier}


@app.delete("/api/tenants/{tenant_id}/credentials/{label}")
def revoke_tenant_credential(
    tenant_id: int,
    label: str,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    access_guard.authorize(db, tenant_id, x_tenant_credential, access_guard.FULL_ACCESS)
    if not tenant_store.revoke_credential(db, tenant_id, label):
        raise HTTPException(status_code=404, detail="Credential not found")
    db.commit()
    return {"message": "Credential revoked", "label": label}


@app.post("/api/tenants/{tenant_id}/deactivate")
def deactivate_tenant(
    tenant_id: int,
    payload: CredentialOnlyRequest | None = None,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    presented = _credential(payload.credential if payload else None, x_tenant_credential)
    access_guard.authorize(db, tenant_id, presented, access_guard.FULL_ACCESS, require_active=False)
    tenant = tenant_store.deactivate_tenant(db, tenant_id)
    db.commit()
    API_LOGGER.warning("Tenant %s deactivated", tenant_id)
    return {"message": "Tenant deactivated", "tenant": tenant_store.serialize_tenant(tenant)}


# -- inventory administration ---------------------------------------------


@app.post("/api/tenants/{tenant_id}/counted-items")
def create_counted_item(
    tenant_id: int,
    payload: CountedItemCreate,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    access_guard.authorize(db, tenant_id, _credential(payload.credential, x_tenant_credential), access_guard.FULL_ACCESS)
    item = inventory_ledger.add_counted_item(
        db,
        tenant_id,
        name=payload.name,
        quantity=payload.quantity,
        is_consumable=payload.isConsumable,
        status=payload.status,
        category=payload.category,
    )
    db.commit()
    return {"message": "Item created", "item": inventory_ledger.serialize_counted_item(item)}


@app.post("/api/tenants/{tenant_id}/unit-items")
def create_unit_item(
    tenant_id: int,
    payload: UnitItemCreate,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    access_guard.authorize(db, tenant_id, _credential(payload.credential, x_tenant_credential), access_guard.FULL_ACCESS)
    unit = inventory_ledger.add_unit_item(
        db,
        tenant_id,
        unit_code=payload.unitCode,
        name=payload.name,
        category=payload.category,
        rim_size=payload.rimSize,
        bolt_count=payload.boltCount,
        bolt_spacing=payload.boltSpacing,
        notes=payload.notes,
    )
    db.commit()
    return {"message": "Unit created", "item": inventory_ledger.serialize_unit_item(unit)}


@app.put("/api/tenants/{tenant_id}/items/{kind}/{item_id}/status")
def update_item_status(
    tenant_id: int,
    kind: str,
    item_id: int,
    payload: ItemStatusUpdate,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    access_guard.authorize(db, tenant_id, _credential(payload.credential, x_tenant_credential), access_guard.FULL_ACCESS)
    ref = ItemRef(kind, item_id)
    item = inventory_ledger.set_status(db, tenant_id, ref, payload.status)
    db.commit()
    if ref.kind == COUNTED:
        return {"message": "Status updated", "item": inventory_ledger.serialize_counted_item(item)}
    return {"message": "Status updated", "item": inventory_ledger.serialize_unit_item(item)}


@app.post("/api/tenants/{tenant_id}/items/{kind}/{item_id}/repair")
def repair_item(
    tenant_id: int,
    kind: str,
    item_id: int,
    payload: ItemRepairRequest,
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    access_guard.authorize(db, tenant_id, _credential(payload.credential, x_tenant_credential), access_guard.FULL_ACCESS)
    ref = ItemRef(kind, item_id)
    if ref.kind == UNIT:
        if payload.isAvailable is None:
            raise ValidationFailed("isAvailable is required to repair a unit.")
        unit = reconciliation_service.repair_unit_item(db, tenant_id, item_id, is_available=payload.isAvailable)
        db.commit()
        return {"message": "Unit repaired", "item": inventory_ledger.serialize_unit_item(unit)}
    if payload.quantity is None or payload.catalogTotal is None:
        raise ValidationFailed("quantity and catalogTotal are required to repair a counted item.")
    item = reconciliation_service.repair_counted_item(
        db,
        tenant_id,
        item_id,
        quantity=payload.quantity,
        catalog_total=payload.catalogTotal,
    )
    db.commit()
    return {"message": "Item repaired", "item": inventory_ledger.serialize_counted_item(item)}


# -- notifications --------------------------------------------------------


@app.get("/api/notifications/pending")
def get_pending_notifications(
    tenant_id: int | None = Query(None, alias="tenantID"),
    db: Session = Depends(get_lending_db),
    x_tenant_credential: str | None = Header(None, alias="X-Tenant-Credential"),
):
    stmt = select(NotificationQueue).where(NotificationQueue.SentAt.is_(None))
    if tenant_id is None:
        access_guard.require_admin(x_tenant_credential)
    else:
        access_guard.authorize(db, tenant_id, x_tenant_credential, access_guard.VIEW_ONLY, require_active=False)
        stmt = stmt.where(NotificationQueue.TenantID == tenant_id)
    notifications = db.execute(stmt.order_by(NotificationQueue.NotificationID)).scalars().all()
    return [
        {
            "notificationID": n.NotificationID,
            "tenantID": n.TenantID,
            "loanID": n.LoanID,
            "type": n.NotificationType,
            "payload": n.Payload,
            "createdAt": n.CreatedAt,
        }
        for n in notifications
    ]
