"""
Outbound notifications: the mailer relay and the Telegram Bot API.

Senders never raise; they log the failure and return False.
"""

import logging
from html import escape as html_escape

import requests

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"
REQUEST_TIMEOUT_SECONDS = 30


def send_email(mailer_url: str, to: str, subject: str, html: str) -> bool:
    if not (mailer_url and to):
        return False
    try:
        response = requests.post(
            mailer_url,
            json={"to": to, "subject": subject, "html": html},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        logger.warning("Mailer request failed: %s", exc.__class__.__name__)
        return False
    if response.status_code >= 400:
        logger.warning("Mailer rejected message (status %s)", response.status_code)
        return False
    return True


def send_key_email(mailer_url: str, to: str, api_key: str) -> bool:
    """Deliver a freshly minted key to its owner."""
    html = (
        f"<p>Your API key: <strong>{html_escape(api_key)}</strong></p>"
        "<p>Keep it safe.</p>"
    )
    delivered = send_email(mailer_url, to, "Your ICI.ndex API key", html)
    if delivered:
        logger.info("API key email delivered")
    return delivered


def send_telegram(bot_token: str, chat_id: str, text: str) -> bool:
    if not (bot_token and chat_id):
        return False
    try:
        response = requests.post(
            TELEGRAM_API_URL.format(token=bot_token),
            json={"chat_id": chat_id, "text": text, "disable_web_page_preview": True},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        logger.warning("Telegram request failed: %s", exc.__class__.__name__)
        return False
    if response.status_code >= 400:
        logger.warning("Telegram rejected message (status %s)", response.status_code)
        return False
    return True
