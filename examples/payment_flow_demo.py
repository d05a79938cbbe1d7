"""
Payment flow demo - resilient calls against a flaky payment gateway.

Simulates a gateway that times out, throttles and finally goes down, and
shows how the chain reacts at each stage:

1. Transient timeouts absorbed by retries
2. Upstream 429 answers feeding the adaptive rate limiter
3. A sustained outage opening the circuit breaker
4. A caller deadline cancelling pending retries

Run with: python examples/payment_flow_demo.py
"""

import asyncio
import random
import uuid

from steadycall.domain.exceptions import (
    OperationTimeoutError,
    RateLimitedError,
    ServiceUnavailableError,
    classify_error,
)
from steadycall.infrastructure.config.config_models import (
    CircuitBreakerConfigModel,
    DependencyConfig,
    LoggingConfig,
    RateLimitConfigModel,
    RetryConfigModel,
    SteadyCallConfig,
)
from steadycall.infrastructure.di.container import ResilienceContainer
from steadycall.infrastructure.logging import logging_context
from steadycall.infrastructure.resilience import CancellationToken


class FlakyGateway:
    """In-memory stand-in for a payment API."""

    def __init__(self):
        self.mode = "flaky"
        self.calls = 0

    async def charge(self, amount_cents: int) -> dict:
        self.calls += 1
        await asyncio.sleep(0.01)
        if self.mode == "down":
            raise ServiceUnavailableError("gateway returned 503")
        if self.mode == "throttled" and self.calls % 2:
            raise RateLimitedError("gateway returned 429", retry_after=0.2)
        if self.mode == "flaky" and random.random() < 0.4:
            raise OperationTimeoutError("gateway timed out")
        return {"id": f"ch_{uuid.uuid4().hex[:12]}", "amount": amount_cents, "status": "succeeded"}


def build_container() -> ResilienceContainer:
    config = SteadyCallConfig(
        use_presets=False,
        dependencies={
            "gateway": DependencyConfig(
                retry=RetryConfigModel(
                    max_retries=3,
                    initial_interval=0.1,
                    max_interval=1.0,
                    retryable_errors=["OperationTimeoutError", "RateLimitedError"],
                ),
                circuit_breaker=CircuitBreakerConfigModel(failure_threshold=3, timeout=2.0),
                rate_limit=RateLimitConfigModel(rate_per_second=20, burst=5, wait_timeout=2.0, adaptive=True),
            ),
        },
        logging=LoggingConfig(level="INFO", file="./demo_logs/steadycall_demo.log"),
    )
    return ResilienceContainer.create(config=config)


async def charge(container: ResilienceContainer, gateway: FlakyGateway, amount: int, token=None):
    chain = container.chain("gateway")
    with logging_context(payment_id=f"pay-{uuid.uuid4().hex[:8]}"):
        try:
            result = await chain.execute(lambda: gateway.charge(amount), token)
            print(f"  charged {amount}: {result['id']}")
        except Exception as e:
            print(f"  failed {amount}: {type(e).__name__} [{classify_error(e).value}]")


async def main():
    container = build_container()
    container.state_changes.add_handler(
        lambda e: print(f"  >> breaker {e.name}: {e.from_state.value} -> {e.to_state.value}")
    )
    gateway = FlakyGateway()

    print("1. Flaky gateway, retries absorb timeouts")
    for amount in (1000, 2500, 4200):
        await charge(container, gateway, amount)

    print("2. Throttled gateway, adaptive limiter backs off")
    gateway.mode = "throttled"
    for amount in (500, 750):
        await charge(container, gateway, amount)

    print("3. Gateway down, breaker opens")
    gateway.mode = "down"
    for amount in (100, 200, 300, 400):
        await charge(container, gateway, amount)
    container.state_changes.drain()

    print("4. Deadline shorter than the retry schedule")
    gateway.mode = "flaky"
    container.breakers.reset_all()
    await charge(container, gateway, 999, CancellationToken(timeout=0.05))
    container.state_changes.drain()

    print("Telemetry:", container.chain("gateway").telemetry.snapshot().to_dict())
    container.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
