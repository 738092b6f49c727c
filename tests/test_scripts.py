import importlib.util
from pathlib import Path
from types import SimpleNamespace

import pytest
import stripe

SCRIPTS_DIR = Path(__file__).resolve().parents[1] / "scripts"

STRIPE_ENV = {
    "STRIPE_SECRET_KEY": "sk_test_0123456789",
    "STRIPE_WEBHOOK_SECRET": "whsec_0123456789",
    "STRIPE_PRICE_ID": "price_0123456789",
    "PUBLIC_BASE_URL": "https://ici.example.com",
}


def _load_script(name):
    module_path = SCRIPTS_DIR / f"{name}.py"
    spec = importlib.util.spec_from_file_location(f"ici_{name}_for_tests", module_path)
    assert spec and spec.loader
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def clean_env(monkeypatch):
    for key in list(STRIPE_ENV) + ["MAILER_URL", "INDEX_JSON_URL"]:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_readiness_passes_with_complete_env(clean_env, capsys):
    readiness = _load_script("stripe_readiness_check")
    for key, value in STRIPE_ENV.items():
        clean_env.setenv(key, value)

    assert readiness.main() == 0
    out = capsys.readouterr().out
    assert out.startswith("ICI_STRIPE_READINESS_START")
    assert "ready_for_checkout: yes" in out
    assert "ready_for_webhook: yes" in out
    for value in STRIPE_ENV.values():
        assert value not in out


def test_readiness_fails_on_missing_or_malformed_values(clean_env, capsys):
    readiness = _load_script("stripe_readiness_check")
    assert readiness.main() == 1
    assert "ready_for_checkout: no" in capsys.readouterr().out

    for key, value in STRIPE_ENV.items():
        clean_env.setenv(key, value)
    clean_env.setenv("STRIPE_PRICE_ID", "prod_wrong_kind")
    assert readiness.main() == 1
    assert "STRIPE_PRICE_ID: present=yes format_ok=no" in capsys.readouterr().out


def registered_endpoint(url="https://ici.example.com/v1/webhook", events=None):
    endpoint = SimpleNamespace(
        url=url,
        status="enabled",
        enabled_events=events or ["checkout.session.completed", "customer.subscription.deleted"],
    )
    return lambda limit: SimpleNamespace(data=[endpoint])


@pytest.fixture
def stripe_env(clean_env):
    for key, value in STRIPE_ENV.items():
        clean_env.setenv(key, value)
    clean_env.setattr(stripe.Price, "retrieve", lambda price_id: SimpleNamespace(recurring={"interval": "month"}))
    clean_env.setattr(stripe.WebhookEndpoint, "list", registered_endpoint())
    return clean_env


def test_remote_verify_requires_secret_key(clean_env, capsys):
    verify = _load_script("stripe_remote_verify")
    assert verify.main() == 1
    assert "STRIPE_SECRET_KEY missing" in capsys.readouterr().out


def test_remote_verify_passes_for_recurring_price_and_endpoint(stripe_env, capsys):
    verify = _load_script("stripe_remote_verify")
    assert verify.main() == 0
    out = capsys.readouterr().out
    assert "recurring=yes" in out
    assert "webhook_endpoint: ok missing_events=none" in out
    assert "price_0123456789" not in out
    assert "sk_test_0123456789" not in out


def test_remote_verify_rejects_one_off_price(stripe_env, capsys):
    verify = _load_script("stripe_remote_verify")
    stripe_env.setattr(stripe.Price, "retrieve", lambda price_id: SimpleNamespace(recurring=None))
    assert verify.main() == 1
    assert "recurring=no" in capsys.readouterr().out


def test_remote_verify_reports_stripe_errors(stripe_env, capsys):
    verify = _load_script("stripe_remote_verify")

    def missing(price_id):
        raise stripe.InvalidRequestError("No such price", "price")

    stripe_env.setattr(stripe.Price, "retrieve", missing)
    assert verify.main() == 1
    assert "[InvalidRequestError]" in capsys.readouterr().out


def test_remote_verify_requires_matching_webhook_endpoint(stripe_env, capsys):
    verify = _load_script("stripe_remote_verify")

    stripe_env.setattr(stripe.WebhookEndpoint, "list", registered_endpoint(url="https://other.example.com/hook"))
    assert verify.main() == 1
    assert "webhook_endpoint: missing for https://ici.example.com/v1/webhook" in capsys.readouterr().out

    stripe_env.setattr(stripe.WebhookEndpoint, "list", registered_endpoint(events=["checkout.session.completed"]))
    assert verify.main() == 1
    assert "missing_events=customer.subscription.deleted" in capsys.readouterr().out

    stripe_env.setattr(stripe.WebhookEndpoint, "list", registered_endpoint(events=["*"]))
    assert verify.main() == 0


@pytest.mark.parametrize(
    "value,expected",
    [("", "<missing>"), ("price_1", "p***"), ("price_0123456789", "price_...6789")],
)
def test_mask(value, expected):
    assert _load_script("stripe_remote_verify").mask(value) == expected
