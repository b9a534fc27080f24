from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from lending_desk.models.lending_models import CountedItem, Loan, UnitItem
from lending_desk.services import inventory_ledger, tenant_store
from lending_desk.services.loan_service import RESERVING_STATUSES


RECON_LOGGER = logging.getLogger("lending_desk.reconciliation")


@dataclass(frozen=True)
class Discrepancy:
    kind: str
    item_id: int
    name: str
    expected: int | bool
    actual: int | bool
    detail: str

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["itemID"] = payload.pop("item_id")
        return payload


def _open_counted_quantities(db: Session, tenant_id: int) -> dict[int, int]:
    rows = db.execute(
        select(Loan.CountedItemID, func.coalesce(func.sum(Loan.Quantity), 0))
        .where(Loan.TenantID == tenant_id)
        .where(Loan.ItemKind == inventory_ledger.COUNTED)
        .where(Loan.Status.in_(sorted(RESERVING_STATUSES)))
        .where(Loan.IsConsumed.is_(False))
        .group_by(Loan.CountedItemID)
    ).all()
    return {int(item_id): int(total or 0) for item_id, total in rows if item_id is not None}


def _open_unit_loans(db: Session, tenant_id: int) -> dict[int, int]:
    counts: dict[int, int] = defaultdict(int)
    rows = db.execute(
        select(Loan.UnitItemID)
        .where(Loan.TenantID == tenant_id)
        .where(Loan.ItemKind == inventory_ledger.UNIT)
        .where(Loan.Status.in_(sorted(RESERVING_STATUSES)))
    ).all()
    for (unit_id,) in rows:
        if unit_id is not None:
            counts[int(unit_id)] += 1
    return counts


def verify(db: Session, tenant_id: int) -> list[Discrepancy]:
    """Recompute ledger state from open loans and report every mismatch.

    Nothing is corrected here; see repair_counted_item / repair_unit_item.
    """
    tenant_store.get(db, tenant_id)
    out_by_item = _open_counted_quantities(db, tenant_id)
    open_by_unit = _open_unit_loans(db, tenant_id)
    counted, units = inventory_ledger.list_inventory(db, tenant_id)

    discrepancies: list[Discrepancy] = []
    for item in counted:
        out = out_by_item.get(item.CountedItemID, 0)
        expected = int(item.CatalogTotal or 0) - out
        actual = int(item.Quantity or 0)
        if actual < 0 or actual > int(item.CatalogTotal or 0):
            discrepancies.append(
                Discrepancy(
                    kind=inventory_ledger.COUNTED,
                    item_id=item.CountedItemID,
                    name=item.Name,
                    expected=expected,
                    actual=actual,
                    detail=f"quantity {actual} outside 0..{item.CatalogTotal}",
                )
            )
        elif actual != expected:
            discrepancies.append(
                Discrepancy(
                    kind=inventory_ledger.COUNTED,
                    item_id=item.CountedItemID,
                    name=item.Name,
                    expected=expected,
                    actual=actual,
                    detail=f"catalog {item.CatalogTotal} minus {out} on open loans",
                )
            )

    for unit in units:
        open_loans = open_by_unit.get(unit.UnitItemID, 0)
        label = unit.Name or unit.UnitCode
        if open_loans > 1:
            discrepancies.append(
                Discrepancy(
                    kind=inventory_ledger.UNIT,
                    item_id=unit.UnitItemID,
                    name=label,
                    expected=1,
                    actual=open_loans,
                    detail=f"{open_loans} open loans reference one unit",
                )
            )
            continue
        expected_available = open_loans == 0
        if bool(unit.IsAvailable) != expected_available:
            discrepancies.append(
                Discrepancy(
                    kind=inventory_ledger.UNIT,
                    item_id=unit.UnitItemID,
                    name=label,
                    expected=expected_available,
                    actual=bool(unit.IsAvailable),
                    detail="availability disagrees with open loans",
                )
            )

    for discrepancy in discrepancies:
        RECON_LOGGER.warning(
            "Discrepancy tenant=%s %s:%s expected=%s actual=%s (%s)",
            tenant_id,
            discrepancy.kind,
            discrepancy.item_id,
            discrepancy.expected,
            discrepancy.actual,
            discrepancy.detail,
        )
    return discrepancies


def repair_counted_item(db: Session, tenant_id: int, item_id: int, *, quantity: int, catalog_total: int) -> CountedItem:
    item = inventory_ledger.set_counts(db, tenant_id, item_id, quantity, catalog_total)
    RECON_LOGGER.warning(
        "Repaired counted=%s tenant=%s quantity=%s catalogTotal=%s",
        item_id,
        tenant_id,
        quantity,
        catalog_total,
    )
    return item


def repair_unit_item(db: Session, tenant_id: int, unit_id: int, *, is_available: bool) -> UnitItem:
    unit = inventory_ledger.set_availability(db, tenant_id, unit_id, is_available)
    RECON_LOGGER.warning("Repaired unit=%s tenant=%s isAvailable=%s", unit_id, tenant_id, is_available)
    return unit
