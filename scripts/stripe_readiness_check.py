#!/usr/bin/env python3
"""
Safe Stripe readiness check for the ICI API.
Prints only presence/format metadata, never secret values.
"""

from __future__ import annotations

import os
import sys

import stripe

from ici_api.config import STRIPE_ENV, Settings

OPTIONAL_KEYS = ["MAILER_URL", "INDEX_JSON_URL", "TELEGRAM_BOT_TOKEN"]

KEY_PREFIXES = {
    "STRIPE_SECRET_KEY": ("sk_live_", "sk_test_", "rk_live_", "rk_test_"),
    "STRIPE_WEBHOOK_SECRET": ("whsec_",),
    "STRIPE_PRICE_ID": ("price_",),
    "PUBLIC_BASE_URL": ("http://", "https://"),
    "MAILER_URL": ("http://", "https://"),
    "INDEX_JSON_URL": ("http://", "https://"),
}


def key_prefix_ok(name: str, value: str) -> bool:
    if not value:
        return False
    prefixes = KEY_PREFIXES.get(name)
    return value.startswith(prefixes) if prefixes else True


def yes_no(flag: bool) -> str:
    return "yes" if flag else "no"


def main() -> int:
    required = list(STRIPE_ENV.values())
    all_present = True
    all_format_ok = True

    print("ICI_STRIPE_READINESS_START")
    for key in required + OPTIONAL_KEYS:
        value = os.getenv(key, "")
        present = bool(value)
        format_ok = key_prefix_ok(key, value)
        if key in required and not present:
            all_present = False
        if present and not format_ok:
            all_format_ok = False
        print(f"{key}: present={yes_no(present)} format_ok={yes_no(format_ok)} len={len(value)}")

    readiness = Settings.from_env().billing_readiness()
    print(f"stripe_library_version: {stripe.VERSION}")
    print(f"ready_for_checkout: {yes_no(readiness['ready_for_checkout'])}")
    print(f"ready_for_webhook: {yes_no(readiness['ready_for_webhook'])}")
    print("ICI_STRIPE_READINESS_END")

    ready = readiness["ready_for_checkout"] and readiness["ready_for_webhook"]
    return 0 if ready and all_present and all_format_ok else 1


if __name__ == "__main__":
    sys.exit(main())
