from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from lending_desk.models.lending_models import CountedItem, UnitItem
from lending_desk.services.errors import (
    InsufficientQuantity,
    ItemFaulty,
    ItemNotFound,
    OverRelease,
    UnitUnavailable,
    ValidationFailed,
)


COUNTED = "counted"
UNIT = "unit"
ITEM_KINDS = {COUNTED, UNIT}
ITEM_STATUSES = {"working", "faulty"}

LEDGER_LOGGER = logging.getLogger("lending_desk.ledger")


@dataclass(frozen=True)
class ItemRef:
    kind: str
    item_id: int

    def __post_init__(self):
        if self.kind not in ITEM_KINDS:
            raise ValidationFailed(f"item kind must be one of {sorted(ITEM_KINDS)}.")


@dataclass(frozen=True)
class Reservation:
    ref: ItemRef
    quantity: int
    remaining: int | None = None


def get_counted_item(db: Session, tenant_id: int, item_id: int) -> CountedItem:
    item = db.get(CountedItem, item_id)
    if not item or item.TenantID != tenant_id:
        raise ItemNotFound(f"Counted item {item_id} not found.")
    return item


def get_unit_item(db: Session, tenant_id: int, unit_id: int) -> UnitItem:
    unit = db.get(UnitItem, unit_id)
    if not unit or unit.TenantID != tenant_id:
        raise ItemNotFound(f"Unit {unit_id} not found.")
    return unit


def get_item(db: Session, tenant_id: int, ref: ItemRef) -> CountedItem | UnitItem:
    if ref.kind == COUNTED:
        return get_counted_item(db, tenant_id, ref.item_id)
    return get_unit_item(db, tenant_id, ref.item_id)


def _validate_quantity(ref: ItemRef, qty: int) -> int:
    value = int(qty)
    if value < 1:
        raise ValidationFailed("quantity must be at least 1.")
    if ref.kind == UNIT and value != 1:
        raise ValidationFailed("Unit items are lent one at a time.")
    return value


def _require_working(item: CountedItem | UnitItem) -> None:
    if item.Status != "working":
        raise ItemFaulty(f"Item {_display_name(item)} is faulty and cannot be lent.")


def _display_name(item: CountedItem | UnitItem) -> str:
    if isinstance(item, UnitItem):
        return item.Name or item.UnitCode
    return item.Name


def check_available(db: Session, tenant_id: int, ref: ItemRef, qty: int = 1) -> CountedItem | UnitItem:
    """Raise the error a reservation would raise right now, without reserving."""
    qty = _validate_quantity(ref, qty)
    item = get_item(db, tenant_id, ref)
    _require_working(item)
    if ref.kind == COUNTED:
        if not item.IsConsumable and qty != 1:
            raise ValidationFailed("Non-consumable items are lent one at a time.")
        if item.Quantity < qty:
            raise InsufficientQuantity(f"Not enough '{item.Name}' in stock.")
    elif not item.IsAvailable:
        raise UnitUnavailable(f"Unit {item.UnitCode} is already lent out.")
    return item


def reserve(db: Session, tenant_id: int, ref: ItemRef, qty: int = 1) -> Reservation:
    qty = _validate_quantity(ref, qty)
    item = get_item(db, tenant_id, ref)
    _require_working(item)
    now = datetime.now()

    if ref.kind == COUNTED:
        result = db.execute(
            update(CountedItem)
            .where(CountedItem.CountedItemID == ref.item_id)
            .where(CountedItem.TenantID == tenant_id)
            .where(CountedItem.Quantity >= qty)
            .values(Quantity=CountedItem.Quantity - qty, UpdatedDate=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientQuantity(f"Not enough '{item.Name}' in stock.")
        item = db.get(CountedItem, ref.item_id, populate_existing=True)
        LEDGER_LOGGER.debug("Reserved %s x counted=%s remaining=%s", qty, ref.item_id, item.Quantity)
        return Reservation(ref=ref, quantity=qty, remaining=item.Quantity)

    result = db.execute(
        update(UnitItem)
        .where(UnitItem.UnitItemID == ref.item_id)
        .where(UnitItem.TenantID == tenant_id)
        .where(UnitItem.IsAvailable.is_(True))
        .values(IsAvailable=False, UpdatedDate=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise UnitUnavailable(f"Unit {item.UnitCode} is already lent out.")
    db.get(UnitItem, ref.item_id, populate_existing=True)
    LEDGER_LOGGER.debug("Reserved unit=%s", ref.item_id)
    return Reservation(ref=ref, quantity=1)


def release(db: Session, tenant_id: int, ref: ItemRef, qty: int = 1) -> None:
    qty = _validate_quantity(ref, qty)
    item = get_item(db, tenant_id, ref)
    now = datetime.now()

    if ref.kind == COUNTED:
        result = db.execute(
            update(CountedItem)
            .where(CountedItem.CountedItemID == ref.item_id)
            .where(CountedItem.TenantID == tenant_id)
            .where(CountedItem.Quantity + qty <= CountedItem.CatalogTotal)
            .values(Quantity=CountedItem.Quantity + qty, UpdatedDate=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            LEDGER_LOGGER.error(
                "Over-release on counted=%s tenant=%s qty=%s quantity=%s catalogTotal=%s",
                ref.item_id,
                tenant_id,
                qty,
                item.Quantity,
                item.CatalogTotal,
            )
            raise OverRelease(f"Releasing {qty} of '{item.Name}' would exceed the catalog total.")
        db.get(CountedItem, ref.item_id, populate_existing=True)
        return

    result = db.execute(
        update(UnitItem)
        .where(UnitItem.UnitItemID == ref.item_id)
        .where(UnitItem.TenantID == tenant_id)
        .where(UnitItem.IsAvailable.is_(False))
        .values(IsAvailable=True, UpdatedDate=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        LEDGER_LOGGER.error("Over-release on unit=%s tenant=%s: unit already available", ref.item_id, tenant_id)
        raise OverRelease(f"Unit {item.UnitCode} is already available.")
    db.get(UnitItem, ref.item_id, populate_existing=True)


def consume(db: Session, tenant_id: int, ref: ItemRef, qty: int = 1) -> Reservation:
    if ref.kind != COUNTED:
        raise ValidationFailed("Only counted items can be consumed.")
    qty = _validate_quantity(ref, qty)
    item = get_counted_item(db, tenant_id, ref.item_id)
    _require_working(item)
    if not item.IsConsumable:
        raise ValidationFailed(f"'{item.Name}' is not a consumable item.")

    result = db.execute(
        update(CountedItem)
        .where(CountedItem.CountedItemID == ref.item_id)
        .where(CountedItem.TenantID == tenant_id)
        .where(CountedItem.Quantity >= qty)
        .values(
            Quantity=CountedItem.Quantity - qty,
            CatalogTotal=CountedItem.CatalogTotal - qty,
            UpdatedDate=datetime.now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientQuantity(f"Requested quantity of '{item.Name}' exceeds stock.")
    item = db.get(CountedItem, ref.item_id, populate_existing=True)
    return Reservation(ref=ref, quantity=qty, remaining=item.Quantity)


def set_status(db: Session, tenant_id: int, ref: ItemRef, status: str) -> CountedItem | UnitItem:
    normalized = (status or "").strip().lower()
    if normalized not in ITEM_STATUSES:
        raise ValidationFailed(f"status must be one of {sorted(ITEM_STATUSES)}.")
    item = get_item(db, tenant_id, ref)
    item.Status = normalized
    item.UpdatedDate = datetime.now()
    return item


def set_counts(db: Session, tenant_id: int, item_id: int, quantity: int, catalog_total: int) -> CountedItem:
    if catalog_total < 0 or quantity < 0 or quantity > catalog_total:
        raise ValidationFailed("quantity must be between 0 and catalogTotal.")
    item = get_counted_item(db, tenant_id, item_id)
    item.Quantity = int(quantity)
    item.CatalogTotal = int(catalog_total)
    item.UpdatedDate = datetime.now()
    return item


def set_availability(db: Session, tenant_id: int, unit_id: int, is_available: bool) -> UnitItem:
    unit = get_unit_item(db, tenant_id, unit_id)
    unit.IsAvailable = bool(is_available)
    unit.UpdatedDate = datetime.now()
    return unit


def add_counted_item(
    db: Session,
    tenant_id: int,
    *,
    name: str,
    quantity: int,
    is_consumable: bool = False,
    status: str = "working",
    category: str | None = None,
) -> CountedItem:
    trimmed = (name or "").strip()
    if not trimmed:
        raise ValidationFailed("name is required.")
    if int(quantity) < 0:
        raise ValidationFailed("quantity cannot be negative.")
    normalized_status = (status or "working").strip().lower()
    if normalized_status not in ITEM_STATUSES:
        raise ValidationFailed(f"status must be one of {sorted(ITEM_STATUSES)}.")
    item = CountedItem(
        TenantID=tenant_id,
        Name=trimmed,
        Category=category,
        Quantity=int(quantity),
        CatalogTotal=int(quantity),
        IsConsumable=bool(is_consumable),
        Status=normalized_status,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(item)
    db.flush()
    return item


def add_unit_item(
    db: Session,
    tenant_id: int,
    *,
    unit_code: str,
    name: str | None = None,
    category: str | None = None,
    rim_size: str | None = None,
    bolt_count: int | None = None,
    bolt_spacing: str | None = None,
    notes: str | None = None,
) -> UnitItem:
    code = (unit_code or "").strip()
    if not code:
        raise ValidationFailed("unitCode is required.")
    existing = db.execute(
        select(UnitItem.UnitItemID)
        .where(UnitItem.TenantID == tenant_id)
        .where(UnitItem.UnitCode == code)
    ).first()
    if existing:
        raise ValidationFailed(f"Unit {code} already exists.")
    unit = UnitItem(
        TenantID=tenant_id,
        UnitCode=code,
        Name=name,
        Category=category,
        RimSize=rim_size,
        BoltCount=bolt_count,
        BoltSpacing=bolt_spacing,
        IsAvailable=True,
        Status="working",
        Notes=notes,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(unit)
    db.flush()
    return unit


def list_inventory(db: Session, tenant_id: int) -> tuple[list[CountedItem], list[UnitItem]]:
    counted = db.execute(
        select(CountedItem).where(CountedItem.TenantID == tenant_id).order_by(CountedItem.Name, CountedItem.CountedItemID)
    ).scalars().all()
    units = db.execute(
        select(UnitItem).where(UnitItem.TenantID == tenant_id).order_by(UnitItem.UnitCode)
    ).scalars().all()
    return list(counted), list(units)


def serialize_counted_item(item: CountedItem) -> dict:
    return {
        "kind": COUNTED,
        "itemID": item.CountedItemID,
        "tenantID": item.TenantID,
        "name": item.Name,
        "category": item.Category,
        "quantity": item.Quantity,
        "catalogTotal": item.CatalogTotal,
        "isConsumable": bool(item.IsConsumable),
        "status": item.Status,
        "updatedDate": item.UpdatedDate,
    }


def serialize_unit_item(unit: UnitItem) -> dict:
    return {
        "kind": UNIT,
        "itemID": unit.UnitItemID,
        "tenantID": unit.TenantID,
        "unitCode": unit.UnitCode,
        "name": unit.Name,
        "category": unit.Category,
        "rimSize": unit.RimSize,
        "boltCount": unit.BoltCount,
        "boltSpacing": unit.BoltSpacing,
        "isAvailable": bool(unit.IsAvailable),
        "status": unit.Status,
        "notes": unit.Notes,
        "updatedDate": unit.UpdatedDate,
    }
