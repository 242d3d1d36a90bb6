# portal_backend/billing_stripe.py
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError

from . import config
from .errors import InvalidInput, UpstreamUnavailable
from .gateway import StripeGateway, get_gateway
from .log import get_logger
from .reconciler import reconcile
from .schemas import AccessToken, CheckoutBody, PortalBody
from .session_verifier import verify_checkout_session

router = APIRouter(tags=["billing"])
log = get_logger("billing")

PLANS = ("course", "membership")


# --- helpers -----------------------------------------------------------------
def _price_for(plan: str) -> str:
    price = config.STRIPE_PRICE_COURSE if plan == "course" else config.STRIPE_PRICE_MEMBERSHIP
    if not price:
        log.error("price_not_configured", plan=plan)
        raise UpstreamUnavailable("Failed to create checkout session")
    return price


def checkout_params(plan: str, customer_email: Optional[str] = None) -> Dict[str, Any]:
    """
    - course: one-time payment (mode=payment)
    - membership: recurring (mode=subscription)
    metadata.plan lets /verify-session tell them apart without guessing.
    """
    params: Dict[str, Any] = {
        "mode": "payment" if plan == "course" else "subscription",
        "line_items": [{"price": _price_for(plan), "quantity": 1}],
        "success_url": f"{config.SITE_URL}/success.html?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{config.SITE_URL}/pricing.html",
        "metadata": {"plan": plan},
    }
    if customer_email:
        params["customer_email"] = customer_email.strip()
    return params


# --- Checkout ----------------------------------------------------------------
@router.post("/create-checkout-session")
def create_checkout_session(body: CheckoutBody, gateway: StripeGateway = Depends(get_gateway)):
    plan = (body.plan or "").strip().lower()
    if plan not in PLANS:
        raise InvalidInput('Invalid plan. Must be "course" or "membership".')

    session = gateway.create_checkout_session(**checkout_params(plan, body.customer_email))
    log.info("checkout_session_created", plan=plan, session_id=session.get("id"))
    return {"url": session.get("url")}


# --- Customer portal ---------------------------------------------------------
@router.post("/create-customer-portal-session")
def create_customer_portal_session(body: PortalBody, gateway: StripeGateway = Depends(get_gateway)):
    customer_id = (body.customer_id or "").strip()
    if not customer_id:
        raise InvalidInput("Missing customer_id")

    portal = gateway.create_portal_session(customer_id, return_url=f"{config.SITE_URL}/portal/index.html")
    return {"url": portal.get("url")}


# --- Verify session ----------------------------------------------------------
@router.get("/verify-session", response_model=AccessToken)
def verify_session(
    session_id: Optional[str] = Query(default=None),
    gateway: StripeGateway = Depends(get_gateway),
):
    return verify_checkout_session(gateway, session_id)


# --- Webhook -----------------------------------------------------------------
@router.post("/stripe-webhook")
async def stripe_webhook(request: Request, gateway: StripeGateway = Depends(get_gateway)):
    """
    Stripe Dashboard → Developers → Webhooks
    endpoint: <site>/api/stripe-webhook
    events:
      - checkout.session.completed
      - customer.subscription.updated
      - customer.subscription.deleted
      - invoice.payment_failed
    """
    payload = await request.body()
    event = gateway.verify_webhook(payload, request.headers.get("stripe-signature"))

    try:
        await run_in_threadpool(reconcile, event)
    except SQLAlchemyError as e:
        log.error("webhook_processing_failed", event_type=event.get("type"), event_id=event.get("id"), error=str(e))
        raise UpstreamUnavailable("Webhook processing failed") from e

    return {"received": True}
