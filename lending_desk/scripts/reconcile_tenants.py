#!/usr/bin/env python3
"""Periodic ledger integrity check across lending tenants."""

from __future__ import annotations

import argparse
import sys
from typing import Iterable

from lending_desk import config
from lending_desk.db.session import build_engine, build_sessionmaker
from lending_desk.services import reconciliation_service, tenant_store
from lending_desk.services.errors import TenantNotFound
from lending_desk.services.reconciliation_service import Discrepancy


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _print_discrepancies(rows: Iterable[Discrepancy]) -> None:
    for row in rows:
        print(f"[FAIL] {row.kind}:{row.item_id} {row.name} :: expected={row.expected} actual={row.actual} ({row.detail})")


def run(session_factory, tenant_id: int | None = None, include_inactive: bool = False) -> int:
    """Verify one tenant or all of them; returns the number of discrepancies."""
    total = 0
    with session_factory() as db:
        if tenant_id is not None:
            tenants = [tenant_store.get(db, tenant_id)]
        else:
            tenants = tenant_store.list_tenants(db, include_inactive=include_inactive)
        for tenant in tenants:
            _print_section(f"Tenant {tenant.TenantID} - {tenant.DisplayName}")
            discrepancies = reconciliation_service.verify(db, tenant.TenantID)
            if not discrepancies:
                print("[OK] ledger matches open loans")
                continue
            _print_discrepancies(discrepancies)
            total += len(discrepancies)
    return total


def main() -> int:
    parser = argparse.ArgumentParser(description="Lending ledger reconciliation")
    parser.add_argument("--db-url", default=config.LENDING_DB_URL)
    parser.add_argument("--tenant", type=int, default=None)
    parser.add_argument("--include-inactive", action="store_true")
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("LENDING_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    config.configure_logging()
    try:
        session_factory = build_sessionmaker(build_engine(db_url))
        total = run(session_factory, args.tenant, args.include_inactive)
    except TenantNotFound as exc:
        print(exc.message)
        return 2
    except Exception as exc:
        print(f"Could not reconcile: {exc}")
        return 3

    _print_section("Summary")
    print(f"{total} discrepancy(ies) found")
    return 1 if total else 0


if __name__ == "__main__":
    sys.exit(main())
