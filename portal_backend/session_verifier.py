# portal_backend/session_verifier.py
from __future__ import annotations

import time
from typing import Any, Dict, Optional

from . import config
from .errors import InvalidInput, NotPaid
from .gateway import StripeGateway
from .log import get_logger
from .schemas import AccessToken

log = get_logger("session_verifier")


def _now_ms() -> int:
    return int(time.time() * 1000)


def resolve_plan(session: Dict[str, Any]) -> Optional[str]:
    """metadata.plan first; otherwise infer from the checkout mode."""
    plan = ((session.get("metadata") or {}).get("plan") or "").strip().lower()
    if plan in ("course", "membership"):
        return plan
    mode = session.get("mode")
    if mode == "subscription":
        return "membership"
    if mode == "payment":
        return "course"
    return None


def subscription_period_end(subscription: Dict[str, Any]) -> Optional[int]:
    """
    Seconds since epoch. Older API versions put current_period_end on the
    subscription, newer ones on each subscription item.
    """
    end = subscription.get("current_period_end")
    if end:
        return int(end)
    items = (subscription.get("items") or {}).get("data") or []
    ends = [int(i["current_period_end"]) for i in items if i.get("current_period_end")]
    return max(ends) if ends else None


def membership_expiry(subscription: Optional[Dict[str, Any]], now_ms: int) -> int:
    period_end = subscription_period_end(subscription) if subscription else None
    if period_end:
        return period_end * 1000 + config.RENEWAL_GRACE_MS
    return now_ms + config.MEMBERSHIP_FALLBACK_MS


def verify_checkout_session(
    gateway: StripeGateway,
    session_id: Optional[str],
    now_ms: Optional[int] = None,
) -> AccessToken:
    """
    Turn a completed checkout into an access token.
    Read-only against Stripe; the entitlement row is the webhook's job.
    """
    session_id = (session_id or "").strip()
    if not session_id:
        raise InvalidInput("Missing session_id parameter")

    now_ms = _now_ms() if now_ms is None else now_ms
    session = gateway.retrieve_checkout_session(session_id)

    if session.get("payment_status") != "paid":
        log.info("session_not_paid", session_id=session_id, payment_status=session.get("payment_status"))
        raise NotPaid()

    plan = resolve_plan(session)
    token = AccessToken(
        customer_id=session.get("customer"),
        customer_email=session.get("customer_email") or (session.get("customer_details") or {}).get("email"),
        plan=plan,
    )

    if plan == "membership":
        sub = session.get("subscription")
        if isinstance(sub, str):
            sub = gateway.retrieve_subscription(sub)
        token.course_access = True
        token.member_access = True
        token.expires_at = membership_expiry(sub, now_ms)
    elif plan == "course":
        token.course_access = True
        token.expires_at = now_ms + config.COURSE_LIFETIME_MS
    else:
        log.warning("session_plan_unknown", session_id=session_id, mode=session.get("mode"))

    log.info("session_verified", session_id=session_id, plan=plan, expires_at=token.expires_at)
    return token
