"""
billing/paypal.py -- PayPal webhook signature verification and event dispatch.

Verification is delegated to PayPal's verify-webhook-signature API: the
server obtains a client-credentials access token, then posts the
transmission headers together with the raw event. Only
verification_status == "SUCCESS" counts as verified.

Payment business logic (subscription state, refunds) is not implemented here;
dispatch_event() only routes and logs.
"""

import logging
from typing import Any, Callable, Mapping, Optional

import requests

logger = logging.getLogger("pecal.billing.paypal")

# Header names as PayPal sends them (matched case-insensitively).
TRANSMISSION_HEADERS = {
    "transmission_id": "paypal-transmission-id",
    "transmission_time": "paypal-transmission-time",
    "cert_url": "paypal-cert-url",
    "auth_algo": "paypal-auth-algo",
    "transmission_sig": "paypal-transmission-sig",
}

_TIMEOUT = 10


class PayPalError(RuntimeError):
    """PayPal could not be reached or answered with an error status."""


class PayPalClient:
    def __init__(self, settings, session: Optional[requests.Session] = None) -> None:
        self.base_url = settings.paypal_api_base_url
        self.client_id = settings.paypal_client_id
        self.client_secret = settings.paypal_client_secret
        self.webhook_id = settings.paypal_webhook_id
        # max_redirects=3 replaces the requests default of 30 -- PayPal's API
        # does not redirect, so a long chain means something is wrong.
        self._session = session or requests.Session()
        self._session.max_redirects = 3

    def _access_token(self) -> str:
        if not self.client_id or not self.client_secret:
            raise RuntimeError("PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET are required")
        try:
            resp = self._session.post(
                f"{self.base_url}/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
                timeout=_TIMEOUT,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise PayPalError(f"Failed to get PayPal access token: {e}") from e
        token = resp.json().get("access_token")
        if not token:
            raise PayPalError("PayPal access_token is missing")
        return token

    def verify_webhook_signature(self, headers: Mapping[str, str], event: dict[str, Any]) -> bool:
        """Ask PayPal whether this delivery is authentic.

        Returns False when any transmission header is missing or PayPal says
        the signature does not verify.

        Raises:
            RuntimeError: PAYPAL_WEBHOOK_ID (or the API credentials) not configured.
            PayPalError: PayPal unreachable or returned an error status.
        """
        if not self.webhook_id:
            raise RuntimeError("PAYPAL_WEBHOOK_ID is required")

        lowered = {k.lower(): v for k, v in headers.items()}
        body: dict[str, Any] = {}
        for field, header in TRANSMISSION_HEADERS.items():
            value = lowered.get(header)
            if not value:
                logger.warning("PayPal webhook missing header %s", header)
                return False
            body[field] = value
        body["webhook_id"] = self.webhook_id
        body["webhook_event"] = event

        token = self._access_token()
        try:
            resp = self._session.post(
                f"{self.base_url}/v1/notifications/verify-webhook-signature",
                json=body,
                headers={"Authorization": f"Bearer {token}"},
                timeout=_TIMEOUT,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise PayPalError(f"PayPal verification failed: {e}") from e
        return resp.json().get("verification_status") == "SUCCESS"


# ---------------------------------------------------------------------------
# Event dispatch
# ---------------------------------------------------------------------------


def _on_sale_completed(event: dict) -> None:
    logger.info("Payment completed: %s", (event.get("resource") or {}).get("id"))


def _on_sale_refunded(event: dict) -> None:
    logger.info("Payment refunded: %s", (event.get("resource") or {}).get("id"))


def _on_subscription_cancelled(event: dict) -> None:
    logger.info("Subscription cancelled: %s", (event.get("resource") or {}).get("id"))


EVENT_HANDLERS: dict[str, Callable[[dict], None]] = {
    "PAYMENT.SALE.COMPLETED": _on_sale_completed,
    "PAYMENT.SALE.REFUNDED": _on_sale_refunded,
    "BILLING.SUBSCRIPTION.CANCELLED": _on_subscription_cancelled,
}


def dispatch_event(event: dict) -> bool:
    """Route a verified event to its handler. Returns False for unhandled types."""
    event_type = event.get("event_type")
    handler = EVENT_HANDLERS.get(event_type or "")
    if handler is None:
        logger.info("Unhandled PayPal event type: %s", event_type)
        return False
    handler(event)
    return True
