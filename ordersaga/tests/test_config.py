import pytest

from ordersaga.config import Settings


def test_defaults():
    s = Settings.from_env({})
    assert s.inventory_timeout_secs == 3.0
    assert s.payments_timeout_secs == 10.0
    assert s.use_http_adapters is False
    assert s.store_url == ""


def test_environment_overrides():
    s = Settings.from_env(
        {
            "USE_HTTP_ADAPTERS": "yes",
            "INVENTORY_BASE_URL": "http://inventory:3002/",
            "HTTP_RETRY_MAX": "5",
            "PAYMENT_FAULT_SEED": "42",
            "LOG_LEVEL": "debug",
        }
    )
    assert s.use_http_adapters is True
    assert s.inventory_base_url == "http://inventory:3002"
    assert s.retry_max == 5
    assert s.payment_fault_seed == 42
    assert s.log_level == "DEBUG"


def test_service_name_from_env_wins_over_app_default():
    assert Settings.from_env({}, service_name="payment-service").service_name == "payment-service"
    assert Settings.from_env({"SERVICE_NAME": "pay-eu"}, service_name="payment-service").service_name == "pay-eu"


@pytest.mark.parametrize(
    "env",
    [
        {"PAYMENT_FAILURE_RATE": "1.5"},
        {"PAYMENT_MIN_LATENCY": "3", "PAYMENT_MAX_LATENCY": "1"},
        {"HTTP_RETRY_MAX": "-1"},
        {"INVENTORY_TIMEOUT_SECS": "0"},
        {"PAYMENTS_TIMEOUT_SECS": "abc"},
        {"HTTP_TIMEOUT_SECS": "-1"},
    ],
)
def test_invalid_values_raise(env):
    with pytest.raises(ValueError):
        Settings.from_env(env)


def test_http_attempt_timeout_leaves_room_for_retries():
    s = Settings.from_env({})
    assert s.attempt_timeout(s.inventory_timeout_secs) == 1.5
    assert s.attempt_timeout(s.payments_timeout_secs) == 5.0

    pinned = Settings.from_env({"HTTP_TIMEOUT_SECS": "2"})
    assert pinned.attempt_timeout(10.0) == 2.0
    assert pinned.attempt_timeout(1.0) == 1.0
