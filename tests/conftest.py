from datetime import UTC, datetime

import pytest
from fastapi.testclient import TestClient

from billsync.main import app


@pytest.fixture
def client():
    """Test client without lifespan; routes get their collaborators via overrides."""
    test_client = TestClient(app)
    yield test_client
    test_client.close()


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2024, 5, 10, 12, 0, tzinfo=UTC)


@pytest.fixture
def paypal_active_payload() -> dict:
    """Trimmed ``GET /v1/billing/subscriptions/{id}`` body for an active PRO plan."""
    return {
        "id": "I-ACTIVE123",
        "plan_id": "P-PRO-MONTHLY",
        "status": "ACTIVE",
        "start_time": "2024-03-02T00:00:00Z",
        "billing_info": {
            "next_billing_time": "2024-06-02T10:00:00Z",
            "failed_payments_count": 0,
            "last_payment": {
                "amount": {"currency_code": "USD", "value": "29.99"},
                "time": "2024-05-02T10:00:00Z",
            },
            "cycle_executions": [
                {
                    "tenure_type": "REGULAR",
                    "sequence": 1,
                    "cycles_completed": 3,
                    "total_cycles": 0,
                }
            ],
        },
    }
