# portal_backend/entitlements.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select, update

from .database import SessionLocal
from .log import get_logger
from .models import Entitlement
from .schemas import EntitlementView

log = get_logger("entitlements")

# Fields a reconciler mutation is allowed to write.
MUTABLE_FIELDS = frozenset({
    "stripe_customer_id",
    "course_access",
    "member_access",
    "membership_status",
    "course_purchased_at",
})


# === helpers =================================================================
def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"not an entitlement field: {sorted(unknown)}")


# === writes ==================================================================
def upsert_by_email(email: str, fields: Dict[str, Any]) -> EntitlementView:
    """
    Insert or merge the entitlement keyed by `email`.

    Merge rules:
      - only the given fields are written; absent fields keep their value
      - course_purchased_at keeps the first purchase time
      - course_access is never set back to False
    """
    _check_fields(fields)
    key = normalize_email(email)
    if not key:
        raise ValueError("email is required")

    now = _now()
    with SessionLocal() as s, s.begin():
        found = s.scalars(select(Entitlement).where(Entitlement.email == key)).first()
        if found is None:
            found = Entitlement(email=key, created_at=now)
            s.add(found)

        for name, value in fields.items():
            if name == "course_purchased_at" and found.course_purchased_at is not None:
                continue
            if name == "course_access" and not value and found.course_access:
                continue
            if name == "stripe_customer_id" and not value:
                continue
            setattr(found, name, value)
        found.updated_at = now
        s.flush()
        view = EntitlementView.model_validate(found)

    log.info("entitlement_upserted", email=key, fields=sorted(fields))
    return view


def update_by_customer_id(customer_id: str, fields: Dict[str, Any]) -> int:
    """Absolute assignment of `fields` on every row of this Stripe customer; returns rows touched."""
    _check_fields(fields)
    if not customer_id:
        raise ValueError("customer_id is required")

    with SessionLocal() as s, s.begin():
        res = s.execute(
            update(Entitlement)
            .where(Entitlement.stripe_customer_id == customer_id)
            .values(**fields, updated_at=_now())
        )
        count = res.rowcount or 0

    if count:
        log.info("entitlement_updated", stripe_customer_id=customer_id, fields=sorted(fields))
    else:
        log.warning("entitlement_not_found", stripe_customer_id=customer_id)
    return count


def link_entitlements_by_email(email: str, account_id: str) -> int:
    """Attach an account to a pre-registration purchase; rows already linked are left alone."""
    key = normalize_email(email)
    if not key or not account_id:
        return 0
    with SessionLocal() as s, s.begin():
        res = s.execute(
            update(Entitlement)
            .where(Entitlement.email == key, Entitlement.account_id.is_(None))
            .values(account_id=account_id, updated_at=_now())
        )
        count = res.rowcount or 0
    if count:
        log.info("entitlement_linked", email=key, account_id=account_id)
    return count


# === reads ===================================================================
def find_entitlement(
    account_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    email: Optional[str] = None,
) -> Optional[EntitlementView]:
    """Resolve by account id, then Stripe customer id, then email; first hit wins."""
    lookups = (
        (Entitlement.account_id, account_id),
        (Entitlement.stripe_customer_id, customer_id),
        (Entitlement.email, normalize_email(email)),
    )
    with SessionLocal() as s:
        for column, value in lookups:
            if not value:
                continue
            row = s.scalars(select(Entitlement).where(column == value)).first()
            if row is not None:
                return EntitlementView.model_validate(row)
    return None


# === access rules ============================================================
def has_valid_access(ent: Optional[EntitlementView]) -> bool:
    """Coarse check: any paid access. A past_due member still passes."""
    if ent is None:
        return False
    return bool(ent.course_access or ent.member_access)


def has_course_access(ent: Optional[EntitlementView]) -> bool:
    return ent is not None and ent.course_access is True


def has_member_access(ent: Optional[EntitlementView]) -> bool:
    """Strict member-only check: needs an active subscription."""
    if ent is None:
        return False
    return ent.member_access is True and ent.membership_status == "active"
