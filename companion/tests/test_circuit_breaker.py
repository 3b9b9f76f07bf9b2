import pytest

from companion.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerError,
    CircuitState,
)

from .conftest import FrozenClock


async def _ok():
    return "fine"


async def _boom():
    raise ConnectionError("backend down")


@pytest.fixture
def breaker():
    return CircuitBreaker("primary", CircuitBreakerConfig(failure_threshold=2, recovery_timeout=30), clock=FrozenClock(0.0))


@pytest.mark.asyncio
async def test_opens_after_threshold(breaker):
    for _ in range(2):
        with pytest.raises(ConnectionError):
            await breaker.call(_boom)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitBreakerError):
        await breaker.call(_ok)
    assert breaker.get_state()["metrics"]["total_rejections"] == 1


@pytest.mark.asyncio
async def test_success_resets_failure_count(breaker):
    with pytest.raises(ConnectionError):
        await breaker.call(_boom)
    assert await breaker.call(_ok) == "fine"
    with pytest.raises(ConnectionError):
        await breaker.call(_boom)
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_half_open_trial_closes_or_reopens(breaker):
    clock = breaker._clock
    for _ in range(2):
        with pytest.raises(ConnectionError):
            await breaker.call(_boom)

    clock.advance(31)
    with pytest.raises(ConnectionError):
        await breaker.call(_boom)
    assert breaker.state == CircuitState.OPEN

    clock.advance(31)
    assert await breaker.call(_ok) == "fine"
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_manual_reset_closes_circuit(breaker):
    for _ in range(2):
        with pytest.raises(ConnectionError):
            await breaker.call(_boom)
    breaker.reset()
    assert breaker.get_state()["state"] == "closed"
    assert await breaker.call(_ok) == "fine"
