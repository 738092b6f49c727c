#!/usr/bin/env python3
"""
Remote Stripe verification for the ICI API.

Checks that STRIPE_PRICE_ID is a recurring price usable for subscription
checkout, and that a webhook endpoint for PUBLIC_BASE_URL/v1/webhook is
registered for the events the API handles. Does not print secrets.
"""

from __future__ import annotations

import sys
from typing import Any, Iterable, List

import stripe

from ici_api.billing import CHECKOUT_COMPLETED, SUBSCRIPTION_DELETED
from ici_api.config import Settings

HANDLED_EVENTS = (CHECKOUT_COMPLETED, SUBSCRIPTION_DELETED)


def mask(value: str) -> str:
    if not value:
        return "<missing>"
    if len(value) <= 8:
        return value[0] + "***"
    return value[:6] + "..." + value[-4:]


def missing_events(endpoint: Any) -> List[str]:
    enabled = set(getattr(endpoint, "enabled_events", None) or [])
    if "*" in enabled:
        return []
    return [event for event in HANDLED_EVENTS if event not in enabled]


def find_endpoint(endpoints: Iterable[Any], url: str) -> Any:
    for endpoint in endpoints:
        if getattr(endpoint, "url", None) == url and getattr(endpoint, "status", "enabled") == "enabled":
            return endpoint
    return None


def main() -> int:
    settings = Settings.from_env()
    if not settings.stripe_secret_key:
        print("STRIPE_SECRET_KEY missing")
        return 1

    stripe.api_key = settings.stripe_secret_key
    failures = 0
    print("ICI_STRIPE_REMOTE_VERIFY_START")

    price_id = settings.stripe_price_id
    if not price_id:
        print("price_id: missing")
        failures += 1
    else:
        try:
            price = stripe.Price.retrieve(price_id)
            recurring = bool(getattr(price, "recurring", None))
            print(f"price_id: ok ({mask(price_id)}) recurring={'yes' if recurring else 'no'}")
            if not recurring:
                failures += 1
        except stripe.StripeError as exc:
            failures += 1
            print(f"price_id: error ({mask(price_id)}) [{exc.__class__.__name__}]")

    if not settings.public_base_url:
        print("webhook_endpoint: skipped (PUBLIC_BASE_URL missing)")
        failures += 1
    else:
        webhook_url = f"{settings.public_base_url}/v1/webhook"
        try:
            endpoint = find_endpoint(stripe.WebhookEndpoint.list(limit=100).data, webhook_url)
        except stripe.StripeError as exc:
            failures += 1
            print(f"webhook_endpoint: error [{exc.__class__.__name__}]")
        else:
            if endpoint is None:
                failures += 1
                print(f"webhook_endpoint: missing for {webhook_url}")
            else:
                missing = missing_events(endpoint)
                print(f"webhook_endpoint: ok missing_events={','.join(missing) or 'none'}")
                if missing:
                    failures += 1

    print(f"webhook_secret_present: {'yes' if settings.stripe_webhook_secret else 'no'}")
    print("ICI_STRIPE_REMOTE_VERIFY_END")
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
