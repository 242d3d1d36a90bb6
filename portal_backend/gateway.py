# portal_backend/gateway.py
from __future__ import annotations

import json
from typing import Any, Dict, Optional

import stripe

from . import config
from .errors import InvalidInput, SignatureInvalid, UpstreamUnavailable
from .log import get_logger

log = get_logger("gateway")


def _plain(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeGateway:
    """
    The only place that talks to the Stripe SDK.
    Returns plain dicts and turns SDK errors into PortalError subclasses:
      - InvalidRequestError (bad id, unknown customer) → InvalidInput
      - any other StripeError → UpstreamUnavailable
    """

    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.api_key = api_key if api_key is not None else config.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else config.STRIPE_WEBHOOK_SECRET

    def _ensure_ready(self) -> None:
        if not self.api_key:
            log.error("stripe_not_configured", missing="STRIPE_SECRET_KEY")
            raise UpstreamUnavailable("Payment provider not configured")

    def _call(self, what: str, fn, *args, invalid_message: str = "Invalid request", **kwargs) -> Dict[str, Any]:
        self._ensure_ready()
        try:
            return _plain(fn(*args, api_key=self.api_key, **kwargs))
        except stripe.InvalidRequestError as e:
            log.warning("stripe_invalid_request", call=what, error=str(e))
            raise InvalidInput(invalid_message) from e
        except stripe.StripeError as e:
            log.error("stripe_call_failed", call=what, error=str(e), error_type=type(e).__name__)
            raise UpstreamUnavailable() from e

    # --- checkout / portal --------------------------------------------------
    def create_checkout_session(self, **params: Any) -> Dict[str, Any]:
        return self._call("checkout.create", stripe.checkout.Session.create, **params)

    def create_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        return self._call(
            "billing_portal.create",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
            invalid_message="Invalid customer ID",
        )

    # --- verification -------------------------------------------------------
    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return self._call(
            "checkout.retrieve",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["subscription", "line_items"],
            invalid_message="Invalid session ID",
        )

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._call("subscription.retrieve", stripe.Subscription.retrieve, subscription_id)

    # --- webhooks -----------------------------------------------------------
    def verify_webhook(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """Check the signature on the raw body first; only then parse it."""
        if not self.webhook_secret:
            log.error("stripe_not_configured", missing="STRIPE_WEBHOOK_SECRET")
            raise UpstreamUnavailable("Webhook secret not configured")

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as e:
            log.warning("webhook_signature_invalid", error="payload is not utf-8")
            raise SignatureInvalid() from e

        try:
            stripe.WebhookSignature.verify_header(
                body,
                sig_header or "",
                self.webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except stripe.SignatureVerificationError as e:
            log.warning("webhook_signature_invalid", error=str(e))
            raise SignatureInvalid() from e

        try:
            return json.loads(body)
        except ValueError as e:
            raise InvalidInput("Webhook payload is not JSON") from e


def get_gateway() -> StripeGateway:
    """FastAPI dependency; tests override it with a fake."""
    return StripeGateway()
