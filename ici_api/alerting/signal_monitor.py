"""
ICI Signal Monitor
Watches the public index and notifies alert subscribers when the signal
regime changes.
"""

import argparse
import logging
import os
import sys
import time
from datetime import datetime
from html import escape as html_escape
from typing import Any, Dict, List, Optional, Tuple

import requests

from ..config import Settings, configure_logging, get_settings
from ..keystore import KeyStore
from ..notify import send_email, send_telegram
from ..signals import Signal, signal_from_score

logger = logging.getLogger(__name__)

STATE_NAME = "ici_signal"
DEFAULT_API_URL = "http://127.0.0.1:8080"

SIGNAL_LABELS = {
    Signal.EXTREME_FEAR: "Extreme fear",
    Signal.FEAR: "Fear",
    Signal.NEUTRAL: "Neutral",
    Signal.GREED: "Greed",
    Signal.EXTREME_GREED: "Extreme greed",
}


def load_public_index(api_url: str) -> Optional[Dict[str, Any]]:
    """Fetch the public snapshot; None while the gateway is not ready."""
    try:
        response = requests.get(f"{api_url.rstrip('/')}/public/index", timeout=30)
    except requests.RequestException as exc:
        logger.warning("Could not reach %s: %s", api_url, exc.__class__.__name__)
        return None
    if response.status_code != 200:
        logger.info("Index not available (status %s)", response.status_code)
        return None
    payload = response.json()
    return payload if isinstance(payload, dict) else None


def label(signal: Optional[str]) -> str:
    if signal is None:
        return "unknown"
    try:
        return SIGNAL_LABELS[Signal(signal)]
    except ValueError:
        return signal


def build_alert(previous: Optional[str], current: Signal, score: Any, updated_at: Optional[str]) -> Dict[str, str]:
    subject = f"ICI signal: {label(previous)} -> {label(current)}"
    text = (
        f"ICI signal changed from {label(previous)} to {label(current)}.\n"
        f"Score: {score}\n"
        f"Index updated: {updated_at or 'n/a'}\n"
        f"Time: {datetime.utcnow().isoformat()}Z"
    )
    html = f"""
<div style="font-family: sans-serif; max-width: 600px; padding: 20px;">
    <h2>{html_escape(subject)}</h2>
    <table style="width: 100%; border-collapse: collapse; margin: 20px 0;">
        <tr style="border-bottom: 1px solid #ddd;">
            <td style="padding: 10px;">Score:</td>
            <td style="padding: 10px; font-weight: bold;">{html_escape(str(score))}</td>
        </tr>
        <tr>
            <td style="padding: 10px;">Index updated:</td>
            <td style="padding: 10px;">{html_escape(updated_at or 'n/a')}</td>
        </tr>
    </table>
</div>
"""
    return {"subject": subject, "text": text, "html": html}


def send_alert(alert: Dict[str, str], subscriptions: List[Dict[str, Any]], settings: Settings) -> Tuple[int, int]:
    """Send through every channel each subscription asked for."""
    delivered = 0
    failed = 0
    for subscription in subscriptions:
        results = []
        if subscription.get("email"):
            results.append(send_email(settings.mailer_url, subscription["email"], alert["subject"], alert["html"]))
        if subscription.get("telegram_chat_id"):
            results.append(send_telegram(settings.telegram_bot_token, subscription["telegram_chat_id"], alert["text"]))
        delivered += sum(1 for ok in results if ok)
        failed += sum(1 for ok in results if not ok)
    return delivered, failed


def run_monitor(keystore: KeyStore, settings: Settings, api_url: str, dry_run: bool = False) -> bool:
    """Run a single check. Returns False when no index was available."""
    payload = load_public_index(api_url)
    if payload is None:
        return False

    score = payload.get("score")
    current = signal_from_score(score)
    state = keystore.get_alert_state(STATE_NAME)
    previous = state["last_signal"] if state else None

    if previous is None:
        logger.info("First observation: signal %s (score %s)", current.value, score)
        keystore.record_alert(STATE_NAME, None, current.value, _score(score))
        return True
    if previous == current.value:
        logger.info("All clear. Signal unchanged: %s (score %s)", current.value, score)
        keystore.record_alert(STATE_NAME, previous, current.value, _score(score))
        return True

    alert = build_alert(previous, current, score, payload.get("updatedAt"))
    subscriptions = keystore.list_alert_subscriptions()
    if dry_run:
        logger.info("Dry run: would send '%s' to %d subscriptions", alert["subject"], len(subscriptions))
        return True

    delivered, failed = send_alert(alert, subscriptions, settings)
    keystore.record_alert(STATE_NAME, previous, current.value, _score(score), alert["subject"], delivered, failed)
    logger.info("%s: %d delivered, %d failed", alert["subject"], delivered, failed)
    return True


def _score(score: Any) -> Optional[float]:
    try:
        return float(score)
    except (TypeError, ValueError):
        return None


def run_daemon(keystore: KeyStore, settings: Settings, api_url: str, interval: int = 300, dry_run: bool = False):
    """Run monitoring in daemon mode."""
    logger.info("Starting ICI signal monitor (interval: %ss)", interval)
    while True:
        try:
            run_monitor(keystore, settings, api_url, dry_run=dry_run)
        except (requests.RequestException, ValueError) as exc:
            logger.error("Monitor error: %s", exc)
        time.sleep(interval)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="ICI Signal Monitor")
    parser.add_argument("--api-url", default=os.getenv("ICI_API_URL", DEFAULT_API_URL), help="Base URL of the ICI API")
    parser.add_argument("--daemon", action="store_true", help="Run in daemon mode")
    parser.add_argument("--interval", type=int, default=300, help="Check interval in seconds (default: 300)")
    parser.add_argument("--test-alert", action="store_true", help="Send a test alert to every subscription")
    parser.add_argument("--dry-run", action="store_true", help="Detect signal changes without sending or recording alerts")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level)
    keystore = KeyStore(settings.db_path)
    keystore.init_db()

    if args.test_alert:
        alert = build_alert(Signal.NEUTRAL.value, Signal.GREED, 61.5, None)
        alert["subject"] = "TEST ALERT: ICI signal monitor is working"
        delivered, failed = send_alert(alert, keystore.list_alert_subscriptions(), settings)
        logger.info("Test alert sent: %d delivered, %d failed", delivered, failed)
        return 0

    if args.daemon:
        run_daemon(keystore, settings, args.api_url, args.interval, dry_run=args.dry_run)
        return 0
    return 0 if run_monitor(keystore, settings, args.api_url, dry_run=args.dry_run) else 1


if __name__ == "__main__":
    sys.exit(main())
