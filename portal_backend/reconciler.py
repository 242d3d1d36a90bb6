# portal_backend/reconciler.py
"""
Stripe event → entitlement mutation.

Every handled event maps to one `Mutation`: a lookup key (purchase email or
Stripe customer id) plus the fields that event owns, assigned absolutely.
Applying the same event twice lands on the same row state, so Stripe retries
and replays are harmless. Event order is not assumed.

Events handled:
  - checkout.session.completed     → upsert by email (course or membership)
  - customer.subscription.updated  → membership status by customer id
  - customer.subscription.deleted  → revoke member access by customer id
  - invoice.payment_failed         → past_due by customer id
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from . import entitlements
from .log import get_logger

log = get_logger("reconciler")

BY_EMAIL = "email"
BY_CUSTOMER = "stripe_customer_id"


@dataclass(frozen=True)
class Mutation:
    key_type: str                   # BY_EMAIL | BY_CUSTOMER
    key: str
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReconcileResult:
    event_type: str
    handled: bool
    mutation: Optional[Mutation] = None
    rows: int = 0


def _now() -> datetime:
    return datetime.now(timezone.utc)


# === subscription status map =================================================
# Stripe status → (membership_status, member_access)
SUBSCRIPTION_STATUS_MAP: Dict[str, Tuple[str, bool]] = {
    "active": ("active", True),
    "trialing": ("active", True),
    "past_due": ("past_due", True),     # grace period keeps access
    "canceled": ("canceled", False),
    "unpaid": ("canceled", False),
}


def map_subscription_status(status: Optional[str]) -> Tuple[str, bool]:
    s = status or "none"
    return SUBSCRIPTION_STATUS_MAP.get(s, (s, False))


# === transitions =============================================================
def _checkout_completed(obj: Dict[str, Any], now: datetime) -> Optional[Mutation]:
    email = obj.get("customer_email") or (obj.get("customer_details") or {}).get("email")
    email = entitlements.normalize_email(email)
    if not email:
        log.error("checkout_without_email", session_id=obj.get("id"))
        return None

    mode = obj.get("mode")
    fields: Dict[str, Any] = {}
    if obj.get("customer"):
        fields["stripe_customer_id"] = obj["customer"]
    if mode == "payment":
        fields["course_access"] = True
        fields["course_purchased_at"] = now
    elif mode == "subscription":
        fields["member_access"] = True
        fields["membership_status"] = "active"

    log.info("checkout_completed", email=email, mode=mode)
    return Mutation(BY_EMAIL, email, fields)


def _subscription_updated(obj: Dict[str, Any], now: datetime) -> Optional[Mutation]:
    customer = obj.get("customer")
    if not customer:
        return None
    status, access = map_subscription_status(obj.get("status"))
    return Mutation(BY_CUSTOMER, customer, {"membership_status": status, "member_access": access})


def _subscription_deleted(obj: Dict[str, Any], now: datetime) -> Optional[Mutation]:
    customer = obj.get("customer")
    if not customer:
        return None
    return Mutation(BY_CUSTOMER, customer, {"membership_status": "canceled", "member_access": False})


def _payment_failed(obj: Dict[str, Any], now: datetime) -> Optional[Mutation]:
    customer = obj.get("customer")
    # one-off invoices carry no subscription; nothing to degrade
    if not customer or not _invoice_subscription(obj):
        return None
    return Mutation(BY_CUSTOMER, customer, {"membership_status": "past_due"})


def _invoice_subscription(invoice: Dict[str, Any]) -> Optional[str]:
    sub = invoice.get("subscription")
    if sub:
        return sub if isinstance(sub, str) else sub.get("id")
    # newer API versions nest it under parent.subscription_details
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


TRANSITIONS: Dict[str, Callable[[Dict[str, Any], datetime], Optional[Mutation]]] = {
    "checkout.session.completed": _checkout_completed,
    "customer.subscription.updated": _subscription_updated,
    "customer.subscription.deleted": _subscription_deleted,
    "invoice.payment_failed": _payment_failed,
}


def plan_mutation(event: Dict[str, Any], now: Optional[datetime] = None) -> Optional[Mutation]:
    """Pure part: which row, which fields. None means nothing to write."""
    handler = TRANSITIONS.get(event.get("type") or "")
    if handler is None:
        return None
    obj = (event.get("data") or {}).get("object") or {}
    return handler(obj, now or _now())


def apply_mutation(m: Mutation) -> int:
    if m.key_type == BY_EMAIL:
        entitlements.upsert_by_email(m.key, m.fields)
        return 1
    return entitlements.update_by_customer_id(m.key, m.fields)


def reconcile(event: Dict[str, Any]) -> ReconcileResult:
    """
    Apply one verified Stripe event. Store errors propagate so the caller
    answers 5xx and Stripe redelivers the whole event.
    """
    etype = event.get("type") or ""
    log.info("webhook_received", event_type=etype, event_id=event.get("id"))

    if etype not in TRANSITIONS:
        log.info("webhook_unhandled", event_type=etype)
        return ReconcileResult(etype, handled=False)

    mutation = plan_mutation(event)
    if mutation is None:
        return ReconcileResult(etype, handled=True)
    return ReconcileResult(etype, handled=True, mutation=mutation, rows=apply_mutation(mutation))
