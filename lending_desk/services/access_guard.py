from __future__ import annotations

import hmac
import logging
import threading
import time
from dataclasses import dataclass

from sqlalchemy.orm import Session

from lending_desk import config
from lending_desk.services import tenant_store
from lending_desk.services.errors import Forbidden, TenantInactive, Unauthorized


VIEW_ONLY = "view_only"
APPROVE_REQUESTS = "approve_requests"
FULL_ACCESS = "full_access"

TIER_RANK = {VIEW_ONLY: 0, APPROVE_REQUESTS: 1, FULL_ACCESS: 2}

ADMIN_LABEL = "admin"

AUTH_LOGGER = logging.getLogger("lending_desk.auth")
_GUARD_LOCK = threading.Lock()
_FAILURES_BY_TENANT: dict[int, list[float]] = {}
_LOCKOUT_UNTIL_BY_TENANT: dict[int, float] = {}


@dataclass(frozen=True)
class Grant:
    tenant_id: int
    label: str
    tier: str
    is_admin: bool = False

    def allows(self, required_tier: str) -> bool:
        return TIER_RANK.get(self.tier, -1) >= TIER_RANK[required_tier]


def _prune_attempts(attempts: list[float], now_ts: float) -> list[float]:
    cutoff = now_ts - max(config.AUTH_ATTEMPT_WINDOW_SECONDS, 1)
    return [ts for ts in attempts if ts >= cutoff]


def _check_lockout(tenant_id: int) -> int | None:
    now_ts = time.time()
    with _GUARD_LOCK:
        lockout_until = _LOCKOUT_UNTIL_BY_TENANT.get(tenant_id)
        if lockout_until and lockout_until > now_ts:
            return max(1, int(lockout_until - now_ts))
        if lockout_until and lockout_until <= now_ts:
            _LOCKOUT_UNTIL_BY_TENANT.pop(tenant_id, None)
            _FAILURES_BY_TENANT.pop(tenant_id, None)
    return None


def _record_failure(tenant_id: int) -> None:
    now_ts = time.time()
    with _GUARD_LOCK:
        attempts = _prune_attempts(_FAILURES_BY_TENANT.get(tenant_id, []), now_ts)
        attempts.append(now_ts)
        _FAILURES_BY_TENANT[tenant_id] = attempts
        if len(attempts) >= max(config.AUTH_MAX_ATTEMPTS_PER_TENANT, 1):
            _LOCKOUT_UNTIL_BY_TENANT[tenant_id] = now_ts + max(config.AUTH_LOCKOUT_SECONDS, 1)
            AUTH_LOGGER.warning("Credential checks locked for tenant=%s after %s failures", tenant_id, len(attempts))


def _record_success(tenant_id: int) -> None:
    with _GUARD_LOCK:
        _FAILURES_BY_TENANT.pop(tenant_id, None)
        _LOCKOUT_UNTIL_BY_TENANT.pop(tenant_id, None)


def reset_attempts() -> None:
    with _GUARD_LOCK:
        _FAILURES_BY_TENANT.clear()
        _LOCKOUT_UNTIL_BY_TENANT.clear()


def _is_admin_secret(presented: str) -> bool:
    admin_secret = (config.LENDING_ADMIN_SECRET or "").strip()
    if not admin_secret or not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), admin_secret.encode("utf-8"))


def authenticate(db: Session, tenant_id: int, presented: str | None) -> Grant:
    tenant = tenant_store.get(db, tenant_id)
    candidate = (presented or "").strip()
    if not candidate:
        raise Unauthorized("Credential required.")

    if _is_admin_secret(candidate):
        return Grant(tenant_id=tenant.TenantID, label=ADMIN_LABEL, tier=FULL_ACCESS, is_admin=True)

    retry_after = _check_lockout(tenant.TenantID)
    if retry_after:
        raise Unauthorized("Too many failed attempts. Try again later.", retry_after=retry_after)

    credential = tenant_store.match_credential(db, tenant.TenantID, candidate)
    if not credential:
        _record_failure(tenant.TenantID)
        AUTH_LOGGER.warning("Rejected credential for tenant=%s", tenant.TenantID)
        raise Unauthorized()

    _record_success(tenant.TenantID)
    return Grant(tenant_id=tenant.TenantID, label=credential.Label, tier=credential.Tier)


def authorize(
    db: Session,
    tenant_id: int,
    presented: str | None,
    required_tier: str,
    *,
    require_active: bool = True,
) -> Grant:
    """Check a presented credential against the tenant and the required tier.

    Raises TenantNotFound, TenantInactive (mutating calls only), Unauthorized
    when the secret is missing or wrong and Forbidden when it is valid but
    below ``required_tier``.
    """
    if required_tier not in TIER_RANK:
        raise ValueError(f"Unknown permission tier: {required_tier}")
    tenant = tenant_store.get(db, tenant_id)
    if require_active and not tenant.IsActive:
        raise TenantInactive(f"Tenant {tenant_id} is inactive.")

    grant = authenticate(db, tenant_id, presented)
    if not grant.allows(required_tier):
        AUTH_LOGGER.info(
            "Forbidden: tenant=%s label=%s tier=%s required=%s",
            tenant_id,
            grant.label,
            grant.tier,
            required_tier,
        )
        raise Forbidden(f"Permission '{required_tier}' required.")
    return grant


def require_admin(presented: str | None) -> None:
    if not (config.LENDING_ADMIN_SECRET or "").strip():
        raise Forbidden("Administration is disabled; set LENDING_ADMIN_SECRET.")
    if not _is_admin_secret((presented or "").strip()):
        AUTH_LOGGER.warning("Rejected administrator secret")
        raise Unauthorized()
