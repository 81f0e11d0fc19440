import pytest

from context_allocator.circuit_breaker import CircuitBreaker, CircuitState, get_breaker
from context_allocator.exceptions import BackendUnavailableError, CircuitOpenError


async def ok():
    return "ok"


async def boom():
    raise BackendUnavailableError("down")


@pytest.mark.asyncio
async def test_opens_after_threshold():
    breaker = CircuitBreaker(name="test", failure_threshold=2, reset_timeout=3600)

    for _ in range(2):
        with pytest.raises(BackendUnavailableError):
            await breaker.call(boom)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.call(ok)


@pytest.mark.asyncio
async def test_half_open_recovers():
    breaker = CircuitBreaker(name="test", failure_threshold=1, reset_timeout=0, half_open_max_calls=1)

    with pytest.raises(BackendUnavailableError):
        await breaker.call(boom)
    assert breaker.state == CircuitState.OPEN

    assert await breaker.call(ok) == "ok"
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_half_open_failure_reopens():
    breaker = CircuitBreaker(name="test", failure_threshold=1, reset_timeout=0)

    with pytest.raises(BackendUnavailableError):
        await breaker.call(boom)
    with pytest.raises(BackendUnavailableError):
        await breaker.call(boom)

    assert breaker.state == CircuitState.OPEN
    assert breaker.failures == 2


def test_circuit_open_is_backend_unavailable():
    assert issubclass(CircuitOpenError, BackendUnavailableError)


def test_get_breaker_is_cached_per_name():
    assert get_breaker("search") is get_breaker("search")
    assert get_breaker("search") is not get_breaker("other")
    assert get_breaker("search").name == "search"


@pytest.mark.asyncio
async def test_success_resets_consecutive_failures():
    breaker = CircuitBreaker(name="test", failure_threshold=2, reset_timeout=3600)

    with pytest.raises(BackendUnavailableError):
        await breaker.call(boom)
    await breaker.call(ok)
    with pytest.raises(BackendUnavailableError):
        await breaker.call(boom)

    assert breaker.state == CircuitState.CLOSED
    assert breaker.failures == 1
