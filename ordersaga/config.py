"""Runtime configuration read from environment variables.

All three apps (orders, inventory, payments) share one ``Settings`` type.
Defaults are suitable for local development; production deployments
override them through the environment.
"""

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

_TRUE = {"1", "true", "yes", "on"}


def _flag(value: str) -> bool:
    return value.strip().lower() in _TRUE


@dataclass(frozen=True)
class Settings:
    """Immutable settings bundle.

    Attributes:
        service_name: Name stamped on log records and health responses.
        log_level: Logging level name.
        store_url: Empty for the in-memory store, otherwise an SQLAlchemy
            async database URL.
        use_http_adapters: When True the orchestrator reaches inventory and
            payments over HTTP; otherwise it calls them in-process.
        inventory_base_url: Root URL of the inventory service.
        payments_base_url: Root URL of the payments service.
        inventory_timeout_secs: Per-step budget for inventory calls.
        payments_timeout_secs: Per-step budget for payment calls.
        retry_max: Retries after the first attempt within a step budget.
        retry_backoff_base: First backoff sleep in seconds, doubled per retry.
        http_timeout_secs: Timeout of a single HTTP attempt; 0 means half of
            the step budget, so a hung attempt still leaves room for a retry.
        retry_max_sleep: Upper bound for a single backoff sleep.
        circuit_fail_threshold: Consecutive failures that open a breaker.
        circuit_reset_timeout: Seconds before an open breaker half-opens.
        payment_failure_rate: Probability of a simulated decline.
        payment_min_latency: Lower bound of simulated authorization latency.
        payment_max_latency: Upper bound of simulated authorization latency.
        payment_fault_seed: Optional seed for the random fault injector.
        api_max_bytes: Largest accepted request body.
    """

    service_name: str = "order-service"
    log_level: str = "INFO"
    store_url: str = ""
    use_http_adapters: bool = False
    inventory_base_url: str = "http://localhost:3002"
    payments_base_url: str = "http://localhost:3001"
    inventory_timeout_secs: float = 3.0
    payments_timeout_secs: float = 10.0
    retry_max: int = 3
    retry_backoff_base: float = 0.15
    http_timeout_secs: float = 0.0
    retry_max_sleep: float = 0.5
    circuit_fail_threshold: int = 5
    circuit_reset_timeout: float = 30.0
    payment_failure_rate: float = 0.1
    payment_min_latency: float = 0.5
    payment_max_latency: float = 2.5
    payment_fault_seed: Optional[int] = None
    api_max_bytes: int = 1 * 1024 * 1024

    def __post_init__(self):
        if not 0.0 <= self.payment_failure_rate <= 1.0:
            raise ValueError("PAYMENT_FAILURE_RATE must be between 0 and 1")
        if self.payment_min_latency < 0 or self.payment_min_latency > self.payment_max_latency:
            raise ValueError("PAYMENT_MIN_LATENCY must be >= 0 and <= PAYMENT_MAX_LATENCY")
        if self.retry_max < 0:
            raise ValueError("HTTP_RETRY_MAX must be >= 0")
        if self.inventory_timeout_secs <= 0 or self.payments_timeout_secs <= 0:
            raise ValueError("step timeouts must be positive")
        if self.http_timeout_secs < 0:
            raise ValueError("HTTP_TIMEOUT_SECS must be >= 0")

    def attempt_timeout(self, step_timeout: float) -> float:
        """Per-attempt HTTP timeout within a step budget of ``step_timeout``."""
        if self.http_timeout_secs:
            return min(self.http_timeout_secs, step_timeout)
        return step_timeout / 2

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "Settings":
        """Build settings from ``environ`` (defaults to ``os.environ``).

        Keyword overrides win over the environment, which is convenient for
        per-app defaults such as ``service_name``.
        """
        env = os.environ if environ is None else environ
        d = cls()
        seed = env.get("PAYMENT_FAULT_SEED")
        settings = cls(
            service_name=env.get("SERVICE_NAME", d.service_name),
            log_level=env.get("LOG_LEVEL", d.log_level).upper(),
            store_url=env.get("STORE_URL", d.store_url),
            use_http_adapters=_flag(env.get("USE_HTTP_ADAPTERS", "false")),
            inventory_base_url=env.get("INVENTORY_BASE_URL", d.inventory_base_url).rstrip("/"),
            payments_base_url=env.get("PAYMENTS_BASE_URL", d.payments_base_url).rstrip("/"),
            inventory_timeout_secs=float(env.get("INVENTORY_TIMEOUT_SECS", d.inventory_timeout_secs)),
            payments_timeout_secs=float(env.get("PAYMENTS_TIMEOUT_SECS", d.payments_timeout_secs)),
            http_timeout_secs=float(env.get("HTTP_TIMEOUT_SECS", d.http_timeout_secs)),
            retry_max=int(env.get("HTTP_RETRY_MAX", d.retry_max)),
            retry_backoff_base=float(env.get("HTTP_RETRY_BACKOFF_BASE", d.retry_backoff_base)),
            retry_max_sleep=float(env.get("HTTP_RETRY_MAX_SLEEP", d.retry_max_sleep)),
            circuit_fail_threshold=int(env.get("HTTP_CIRCUIT_FAIL_THRESHOLD", d.circuit_fail_threshold)),
            circuit_reset_timeout=float(env.get("HTTP_CIRCUIT_RESET_TIMEOUT", d.circuit_reset_timeout)),
            payment_failure_rate=float(env.get("PAYMENT_FAILURE_RATE", d.payment_failure_rate)),
            payment_min_latency=float(env.get("PAYMENT_MIN_LATENCY", d.payment_min_latency)),
            payment_max_latency=float(env.get("PAYMENT_MAX_LATENCY", d.payment_max_latency)),
            payment_fault_seed=int(seed) if seed not in (None, "") else None,
            api_max_bytes=int(env.get("API_MAX_BYTES", d.api_max_bytes)),
        )
        if overrides:
            # SERVICE_NAME from the environment still wins over a per-app default
            if "service_name" in overrides and "SERVICE_NAME" in env:
                overrides.pop("service_name")
            settings = replace(settings, **overrides)
        return settings
