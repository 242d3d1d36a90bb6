import hashlib
import hmac
import json
import time

from portal_backend.errors import InvalidInput
from portal_backend.gateway import StripeGateway

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway(StripeGateway):
    """Records calls; sessions and subscriptions are served from dicts."""

    def __init__(self):
        super().__init__(api_key="sk_test_123", webhook_secret=WEBHOOK_SECRET)
        self.calls = []
        self.sessions = {}
        self.subscriptions = {}
        self.fail_with = None

    def _record(self, name, **kwargs):
        self.calls.append((name, kwargs))
        if self.fail_with is not None:
            raise self.fail_with

    def create_checkout_session(self, **params):
        self._record("checkout", **params)
        return {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}

    def create_portal_session(self, customer_id, return_url):
        self._record("portal", customer_id=customer_id, return_url=return_url)
        if not customer_id.startswith("cus_"):
            raise InvalidInput("Invalid customer ID")
        return {"url": f"https://billing.stripe.test/{customer_id}"}

    def retrieve_checkout_session(self, session_id):
        self._record("retrieve_session", session_id=session_id)
        if session_id not in self.sessions:
            raise InvalidInput("Invalid session ID")
        return self.sessions[session_id]

    def retrieve_subscription(self, subscription_id):
        self._record("retrieve_subscription", subscription_id=subscription_id)
        return self.subscriptions[subscription_id]


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    mac = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def make_event(event_type: str, obj: dict, event_id: str = "evt_1") -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def post_event(client, event: dict, secret: str = WEBHOOK_SECRET):
    payload = json.dumps(event)
    return client.post(
        "/api/stripe-webhook",
        content=payload,
        headers={"stripe-signature": sign_payload(payload, secret), "content-type": "application/json"},
    )
