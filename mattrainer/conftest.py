# mattrainer/conftest.py
import os

import pytest

os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

from mattrainer.core.config import BillingPolicy, GatewayConfig
from mattrainer.core.database import create_all_tables, dispose_engine, init_engine
from mattrainer.features.billing.service import BillingRuntime, reset_runtime, set_runtime
from mattrainer.features.billing.signature import SignatureVerifier
from mattrainer.tests.mocks import FakeGateway, PUBLIC_ID, WEBHOOK_SECRET


@pytest.fixture(scope="function", autouse=True)
def sqlite_db():
    """
    Fresh in-memory SQLite database per test.

    StaticPool keeps one shared connection so every session sees the same data.
    """
    init_engine("sqlite://")
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def billing_policy():
    return BillingPolicy(
        price=399,
        currency="RUB",
        trial_days=7,
        description="MatTrainer subscription",
        dedup_enabled=True,
        dedup_retention_days=90,
    )


@pytest.fixture
def billing_runtime(fake_gateway, billing_policy):
    """Install a deterministic runtime (fixed secret, price, trial) with a fake gateway."""
    runtime = BillingRuntime(
        gateway_config=GatewayConfig(
            mode="test",
            public_id=PUBLIC_ID,
            api_secret="api_secret_test",
            webhook_secret=WEBHOOK_SECRET,
            base_url="https://gateway.test",
            timeout_seconds=1.0,
        ),
        policy=billing_policy,
        verifier=SignatureVerifier(WEBHOOK_SECRET),
        gateway=fake_gateway,
    )
    set_runtime(runtime)
    yield runtime
    reset_runtime()


@pytest.fixture
def client(billing_runtime):
    from fastapi.testclient import TestClient
    from mattrainer.main import app

    return TestClient(app)
