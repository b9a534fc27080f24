import os

os.environ.setdefault("LENDING_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("LENDING_ADMIN_SECRET", "admin-test-secret")
os.environ.setdefault("EVENT_DISPATCH_MODE", "sync")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from lending_desk.db.base import Base
from lending_desk.db.session import build_engine, build_sessionmaker
from lending_desk.services import access_guard, inventory_ledger, tenant_store
from lending_desk.services.access_guard import Grant


MANAGER_SECRET = "manager-secret"
APPROVER_SECRET = "approver-secret"
VIEWER_SECRET = "viewer-secret"
ADMIN_SECRET = os.environ["LENDING_ADMIN_SECRET"]


def memory_session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    return engine, build_sessionmaker(engine)


def file_session_factory(path: str):
    engine = build_engine(f"sqlite+pysqlite:///{path}")
    Base.metadata.create_all(bind=engine)
    return engine, build_sessionmaker(engine)


def seed_tenant(db, *, mode="direct", name="Haifa", **settings):
    tenant = tenant_store.create_tenant(db, display_name=name, mode=mode, **settings)
    tenant_store.set_credential(db, tenant.TenantID, MANAGER_SECRET, tier=access_guard.FULL_ACCESS, label="manager")
    tenant_store.set_credential(db, tenant.TenantID, APPROVER_SECRET, tier=access_guard.APPROVE_REQUESTS, label="dispatcher")
    tenant_store.set_credential(db, tenant.TenantID, VIEWER_SECRET, tier=access_guard.VIEW_ONLY, label="viewer")
    db.commit()
    return tenant


def seed_counted(db, tenant_id, *, name="Jack", quantity=3, is_consumable=False):
    item = inventory_ledger.add_counted_item(
        db,
        tenant_id,
        name=name,
        quantity=quantity,
        is_consumable=is_consumable,
    )
    db.commit()
    return item


def seed_unit(db, tenant_id, *, unit_code="W-16-01", name="Spare wheel 16"):
    unit = inventory_ledger.add_unit_item(db, tenant_id, unit_code=unit_code, name=name, rim_size="16")
    db.commit()
    return unit


def manager_grant(tenant_id):
    return Grant(tenant_id=tenant_id, label="manager", tier=access_guard.FULL_ACCESS)


def approver_grant(tenant_id):
    return Grant(tenant_id=tenant_id, label="dispatcher", tier=access_guard.APPROVE_REQUESTS)


def viewer_grant(tenant_id):
    return Grant(tenant_id=tenant_id, label="viewer", tier=access_guard.VIEW_ONLY)
