# Ensure repository root is on sys.path for direct test execution without editable install.
import hashlib
import hmac
import json
import pathlib
import sys
import time

import pytest

root = pathlib.Path(__file__).resolve().parent.parent
if str(root) not in sys.path:
    sys.path.insert(0, str(root))

from fastapi.testclient import TestClient  # noqa: E402

from ici_api.config import Settings  # noqa: E402
from ici_api.keystore import KeyStore, hash_key  # noqa: E402
from ici_api.main import create_app  # noqa: E402
from ici_api.models import KeyRecord  # noqa: E402
from ici_api.snapshot import SnapshotCache  # noqa: E402

WEBHOOK_SECRET = "whsec_pytest_secret"


def sample_document():
    return {
        "score": 63.4,
        "updatedAt": "2026-10-18T06:00:00Z",
        "dca": {"multiplier": 0.8},
        "drivers": [
            {"name": "liquidity", "value": 0.7},
            {"name": "valuation", "value": -0.2},
            {"name": "momentum", "value": 0.4},
        ],
        "history": [
            {
                "date": "2026-10-16",
                "score": 52.0,
                "drivers": [
                    {"name": "liquidity", "value": 0.5},
                    {"name": "valuation", "value": -0.1},
                    {"name": "momentum", "value": 0.4},
                ],
            },
            {
                "date": "2026-10-17",
                "score": 55.0,
                "drivers": [
                    {"name": "liquidity", "value": 0.4},
                    {"name": "valuation", "value": 0.1},
                    {"name": "momentum", "value": 0.4},
                ],
            },
            {"date": "2026-10-18", "score": 63.4},
        ],
        "dcaHistory": [{"date": "2026-10-17", "multiplier": 1.0}],
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhook bodies."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def webhook_body(event_type: str, obj: dict, event_id: str = "evt_pytest_1") -> str:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}})


SETTINGS_ENV = [
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_PRICE_ID",
    "PUBLIC_BASE_URL",
    "MAILER_URL",
    "TELEGRAM_BOT_TOKEN",
    "INDEX_JSON_URL",
    "PORT",
    "ICI_DB_PATH",
    "ICI_BASE_REFRESH_SECONDS",
    "ICI_MARKET_REFRESH_SECONDS",
    "ICI_UPSTREAM_TIMEOUT_SECONDS",
    "ICI_ENABLE_SCHEDULER",
    "ICI_CORS_ALLOW_ORIGINS",
    "ICI_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep the host environment and any local .env out of Settings."""
    for name in SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


@pytest.fixture
def settings(tmp_path):
    return Settings(
        stripe_webhook_secret=WEBHOOK_SECRET,
        public_base_url="https://ici.example.com",
        db_path=tmp_path / "ici_api.db",
        scheduler_enabled=False,
        cors_allow_origins=["*"],
    )


@pytest.fixture
def keystore(settings):
    store = KeyStore(settings.db_path)
    store.init_db()
    return store


@pytest.fixture
def cache():
    return SnapshotCache()


@pytest.fixture
def app(settings, keystore, cache):
    return create_app(settings, keystore=keystore, cache=cache)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def ready_cache(cache):
    cache.write_base(sample_document())
    return cache


@pytest.fixture
def api_key(keystore):
    key = "ici-pro-pytest-contract-key"
    keystore.insert(
        KeyRecord(
            key_hash=hash_key(key),
            plan="pro",
            status="active",
            email="owner@example.com",
            stripe_customer_id="cus_pytest",
            stripe_subscription_id="sub_pytest",
        )
    )
    return key


def auth_headers(api_key: str):
    return {"Authorization": f"Bearer {api_key}"}
