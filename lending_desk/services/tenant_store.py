from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from lending_desk.models.lending_models import Tenant, TenantCredential
from lending_desk.services.errors import TenantInactive, TenantNotFound, ValidationFailed


MODES = {"direct", "request"}
TENANT_KINDS = {"city", "station"}
TIERS = ("view_only", "approve_requests", "full_access")
MIN_SECRET_LENGTH = 4


def _secret_hash(secret: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (secret or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def _normalize_mode(raw_mode: str | None) -> str:
    mode = (raw_mode or "").strip().lower()
    if mode not in MODES:
        raise ValidationFailed(f"mode must be one of {sorted(MODES)}.")
    return mode


def _normalize_tier(raw_tier: str | None) -> str:
    tier = (raw_tier or "full_access").strip().lower()
    if tier not in TIERS:
        raise ValidationFailed(f"tier must be one of {list(TIERS)}.")
    return tier


def get(db: Session, tenant_id: int) -> Tenant:
    tenant = db.get(Tenant, tenant_id)
    if not tenant:
        raise TenantNotFound(f"Tenant {tenant_id} not found.")
    return tenant


def get_active(db: Session, tenant_id: int) -> Tenant:
    tenant = get(db, tenant_id)
    if not tenant.IsActive:
        raise TenantInactive(f"Tenant {tenant_id} is inactive.")
    return tenant


def list_tenants(db: Session, include_inactive: bool = False) -> list[Tenant]:
    stmt = select(Tenant).order_by(Tenant.DisplayName, Tenant.TenantID)
    if not include_inactive:
        stmt = stmt.where(Tenant.IsActive.is_(True))
    return list(db.execute(stmt).scalars().all())


def create_tenant(
    db: Session,
    *,
    display_name: str,
    kind: str = "city",
    mode: str = "direct",
    access_code: str | None = None,
    require_caller_id: bool = False,
    require_return_approval: bool | None = None,
) -> Tenant:
    name = (display_name or "").strip()
    if not name:
        raise ValidationFailed("displayName is required.")
    normalized_kind = (kind or "city").strip().lower()
    if normalized_kind not in TENANT_KINDS:
        raise ValidationFailed(f"kind must be one of {sorted(TENANT_KINDS)}.")
    tenant = Tenant(
        DisplayName=name,
        Kind=normalized_kind,
        IsActive=True,
        Mode=_normalize_mode(mode),
        AccessCode=(access_code or "").strip() or None,
        RequireCallerID=bool(require_caller_id),
        RequireReturnApproval=require_return_approval,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(tenant)
    db.flush()
    return tenant


def set_mode(db: Session, tenant_id: int, mode: str) -> Tenant:
    tenant = get_active(db, tenant_id)
    tenant.Mode = _normalize_mode(mode)
    tenant.UpdatedDate = datetime.now()
    return tenant


def update_settings(db: Session, tenant_id: int, changes: dict[str, Any]) -> Tenant:
    tenant = get_active(db, tenant_id)
    if "displayName" in changes:
        name = (changes.get("displayName") or "").strip()
        if not name:
            raise ValidationFailed("displayName cannot be empty.")
        tenant.DisplayName = name
    if "accessCode" in changes:
        tenant.AccessCode = (changes.get("accessCode") or "").strip() or None
    if "requireCallerID" in changes:
        tenant.RequireCallerID = bool(changes.get("requireCallerID"))
    if "requireReturnApproval" in changes:
        value = changes.get("requireReturnApproval")
        tenant.RequireReturnApproval = None if value is None else bool(value)
    tenant.UpdatedDate = datetime.now()
    return tenant


def deactivate_tenant(db: Session, tenant_id: int) -> Tenant:
    tenant = get(db, tenant_id)
    tenant.IsActive = False
    tenant.UpdatedDate = datetime.now()
    return tenant


def requires_return_approval(tenant: Tenant) -> bool:
    if tenant.RequireReturnApproval is not None:
        return bool(tenant.RequireReturnApproval)
    return tenant.Mode == "request"


def set_credential(
    db: Session,
    tenant_id: int,
    secret: str,
    *,
    tier: str = "full_access",
    label: str = "primary",
) -> TenantCredential:
    tenant = get(db, tenant_id)
    trimmed = (secret or "").strip()
    if len(trimmed) < MIN_SECRET_LENGTH:
        raise ValidationFailed(f"Credential must be at least {MIN_SECRET_LENGTH} characters.")
    normalized_label = (label or "primary").strip() or "primary"

    credential = db.execute(
        select(TenantCredential)
        .where(TenantCredential.TenantID == tenant.TenantID)
        .where(TenantCredential.Label == normalized_label)
    ).scalars().first()
    if not credential:
        credential = TenantCredential(TenantID=tenant.TenantID, Label=normalized_label)
        db.add(credential)

    salt = secrets.token_hex(16)
    credential.SecretSalt = salt
    credential.SecretHash = _secret_hash(trimmed, salt)
    credential.Tier = _normalize_tier(tier)
    credential.IsActive = True
    credential.UpdatedDate = datetime.now()
    db.flush()
    return credential


def revoke_credential(db: Session, tenant_id: int, label: str) -> bool:
    credential = db.execute(
        select(TenantCredential)
        .where(TenantCredential.TenantID == tenant_id)
        .where(TenantCredential.Label == (label or "").strip())
    ).scalars().first()
    if not credential:
        return False
    credential.IsActive = False
    credential.UpdatedDate = datetime.now()
    return True


def match_credential(db: Session, tenant_id: int, presented: str | None) -> TenantCredential | None:
    candidate = (presented or "").strip()
    if len(candidate) < MIN_SECRET_LENGTH:
        return None
    rows = db.execute(
        select(TenantCredential)
        .where(TenantCredential.TenantID == tenant_id)
        .where(TenantCredential.IsActive.is_(True))
        .order_by(TenantCredential.CredentialID)
    ).scalars().all()
    for credential in rows:
        expected = _secret_hash(candidate, credential.SecretSalt)
        if hmac.compare_digest(expected, credential.SecretHash):
            return credential
    return None


def verify_credential(db: Session, tenant_id: int, presented: str | None) -> bool:
    get(db, tenant_id)
    return match_credential(db, tenant_id, presented) is not None


def serialize_tenant(tenant: Tenant, include_access_code: bool = False) -> dict:
    payload = {
        "tenantID": tenant.TenantID,
        "displayName": tenant.DisplayName,
        "kind": tenant.Kind,
        "isActive": bool(tenant.IsActive),
        "mode": tenant.Mode,
        "requireCallerID": bool(tenant.RequireCallerID),
        "requireReturnApproval": requires_return_approval(tenant),
        "hasAccessCode": bool(tenant.AccessCode),
        "createdDate": tenant.CreatedDate,
        "updatedDate": tenant.UpdatedDate,
    }
    if include_access_code:
        payload["accessCode"] = tenant.AccessCode
    return payload
