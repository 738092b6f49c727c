"""
Stripe integration: checkout session creation and webhook event handling.

Webhook events mint a key on ``checkout.session.completed`` and deactivate
keys on ``customer.subscription.deleted``. Each event id is claimed in the
billing ledger in the same transaction as the key insert, so a redelivered
checkout event does not mint a second key.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import stripe

from .config import Settings
from .errors import ConfigurationError, SignatureVerificationFailure
from .keystore import KeyStore, generate_api_key
from .models import KEY_STATUS_ACTIVE, KEY_STATUS_INACTIVE, KeyRecord

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
DEFAULT_PLAN = "pro"


@dataclass
class MintedKey:
    """A key created from a checkout; ``api_key`` is the only plaintext copy."""

    api_key: str
    record: KeyRecord


@dataclass
class WebhookOutcome:
    event_type: str
    minted: Optional[MintedKey] = None
    deactivated: int = 0
    duplicate: bool = False


def create_checkout_session(settings: Settings, email: Optional[str]) -> str:
    if not settings.stripe_price_id:
        raise ConfigurationError("Missing Stripe price id")
    if not settings.stripe_secret_key:
        raise ConfigurationError("Missing Stripe secret key")

    stripe.api_key = settings.stripe_secret_key
    session_kwargs: Dict[str, Any] = {
        "mode": "subscription",
        "line_items": [{"price": settings.stripe_price_id, "quantity": 1}],
        "success_url": f"{settings.public_base_url}/api-keys.html?status=success",
        "cancel_url": f"{settings.public_base_url}/api-keys.html?status=cancel",
    }
    if email:
        session_kwargs["customer_email"] = email
    session = stripe.checkout.Session.create(**session_kwargs)
    return session["url"]


def _customer_email(session: Dict[str, Any]) -> Optional[str]:
    """Checkout without a prefilled email reports the buyer under ``customer_details``."""
    details = session.get("customer_details")
    if not isinstance(details, dict):
        details = {}
    return session.get("customer_email") or details.get("email") or None


class BillingEventHandler:
    def __init__(self, keystore: KeyStore, webhook_secret: str):
        self.keystore = keystore
        self.webhook_secret = webhook_secret

    def verify(self, payload: Union[bytes, str], signature: Optional[str]) -> Dict[str, Any]:
        """Check the Stripe signature over the raw body and decode the event."""
        if not self.webhook_secret:
            raise ConfigurationError("Missing Stripe webhook secret")
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError:
                raise SignatureVerificationFailure("Webhook Error: body is not valid UTF-8")
        if not signature:
            raise SignatureVerificationFailure("Webhook Error: missing Stripe-Signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, self.webhook_secret, stripe.Webhook.DEFAULT_TOLERANCE
            )
        except stripe.SignatureVerificationError as exc:
            raise SignatureVerificationFailure(f"Webhook Error: {exc}")
        try:
            event = json.loads(payload)
        except ValueError:
            raise SignatureVerificationFailure("Webhook Error: invalid payload")
        if not isinstance(event, dict):
            raise SignatureVerificationFailure("Webhook Error: invalid payload")
        return event

    def handle(self, event: Dict[str, Any]) -> WebhookOutcome:
        event_type = str(event.get("type") or "unknown")
        data = event.get("data") or {}
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            obj = {}

        if event_type == CHECKOUT_COMPLETED:
            return self._checkout_completed(event.get("id"), obj)
        if event_type == SUBSCRIPTION_DELETED:
            changed = self.keystore.update_status_by_subscription(obj.get("customer"), obj.get("id"), KEY_STATUS_INACTIVE)
            logger.info(
                "Subscription %s for customer %s deleted; %d key(s) deactivated",
                obj.get("id"),
                obj.get("customer"),
                changed,
            )
            return WebhookOutcome(event_type, deactivated=changed)

        logger.debug("Ignoring Stripe event %s", event_type)
        return WebhookOutcome(event_type)

    def _checkout_completed(self, event_id: Optional[str], session: Dict[str, Any]) -> WebhookOutcome:
        api_key, key_hash = generate_api_key(DEFAULT_PLAN)
        record = KeyRecord(
            key_hash=key_hash,
            plan=DEFAULT_PLAN,
            status=KEY_STATUS_ACTIVE,
            email=_customer_email(session),
            stripe_customer_id=session.get("customer") or None,
            stripe_subscription_id=session.get("subscription") or None,
        )
        with self.keystore.transaction() as conn:
            if event_id and not self.keystore.claim_event(event_id, CHECKOUT_COMPLETED, key_hash, conn=conn):
                logger.info("Checkout event %s already processed; no key minted", event_id)
                return WebhookOutcome(CHECKOUT_COMPLETED, duplicate=True)
            stored = self.keystore.insert(record, conn=conn)
        logger.info(
            "Minted %s key %s... for customer %s",
            stored.plan,
            key_hash[:12],
            stored.stripe_customer_id,
        )
        return WebhookOutcome(CHECKOUT_COMPLETED, minted=MintedKey(api_key=api_key, record=stored))
