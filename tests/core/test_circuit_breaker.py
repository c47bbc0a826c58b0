"""
Unit Tests for Circuit Breaker

Tests cover:
- State transitions (CLOSED → OPEN → HALF_OPEN → CLOSED)
- Failure threshold behavior
- Recovery window (injected clock)
- Half-open probe limit
- Status reporting
- Thread safety
"""

import threading

import pytest

from agencyflow.core.circuit_breaker import CircuitBreaker, CircuitBreakerState


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("dedicated", failure_threshold=3, recovery_timeout=60, clock=clock)


def _fail(breaker, times):
    for _ in range(times):
        breaker.record_failure()


# ============================================================================
# BASIC FUNCTIONALITY TESTS
# ============================================================================

@pytest.mark.unit
def test_circuit_breaker_initial_state(breaker):
    """Test circuit breaker starts in CLOSED state"""
    assert breaker.state == CircuitBreakerState.CLOSED
    assert breaker.allow_request()
    assert not breaker.is_open()


@pytest.mark.unit
def test_circuit_breaker_opens_after_threshold(breaker):
    """Test circuit opens after reaching failure threshold"""
    _fail(breaker, 2)
    assert breaker.state == CircuitBreakerState.CLOSED

    breaker.record_failure()

    assert breaker.is_open()
    assert not breaker.allow_request()


@pytest.mark.unit
def test_circuit_breaker_success_resets_failures(breaker):
    """Test success resets failure counter"""
    _fail(breaker, 2)
    breaker.record_success()
    _fail(breaker, 2)

    assert breaker.state == CircuitBreakerState.CLOSED
    assert breaker.get_status()["failure_count"] == 2


# ============================================================================
# RECOVERY TESTS
# ============================================================================

@pytest.mark.unit
def test_circuit_breaker_open_to_half_open(breaker, clock):
    _fail(breaker, 3)

    clock.now += 59
    assert breaker.state == CircuitBreakerState.OPEN

    clock.now += 1
    assert breaker.state == CircuitBreakerState.HALF_OPEN


@pytest.mark.unit
def test_circuit_breaker_half_open_allows_single_probe(breaker, clock):
    _fail(breaker, 3)
    clock.now += 60

    assert breaker.allow_request() is True
    assert breaker.allow_request() is False


@pytest.mark.unit
def test_circuit_breaker_half_open_to_closed_on_success(breaker, clock):
    _fail(breaker, 3)
    clock.now += 60
    breaker.allow_request()

    breaker.record_success()

    assert breaker.state == CircuitBreakerState.CLOSED
    assert breaker.allow_request()


@pytest.mark.unit
def test_circuit_breaker_half_open_to_open_on_failure(breaker, clock):
    """A failed probe reopens the circuit for another full window"""
    _fail(breaker, 3)
    clock.now += 60
    breaker.allow_request()

    breaker.record_failure()

    assert breaker.is_open()
    clock.now += 30
    assert not breaker.allow_request()


@pytest.mark.unit
def test_circuit_breaker_manual_reset(breaker):
    _fail(breaker, 3)

    breaker.reset()

    assert breaker.state == CircuitBreakerState.CLOSED
    assert breaker.get_status()["failure_count"] == 0


# ============================================================================
# STATUS / CONCURRENCY
# ============================================================================

@pytest.mark.unit
def test_circuit_breaker_get_status(breaker):
    _fail(breaker, 3)

    assert breaker.get_status() == {
        "name": "dedicated",
        "state": "open",
        "failure_count": 3,
        "failure_threshold": 3,
        "recovery_timeout_seconds": 60,
    }


@pytest.mark.unit
def test_circuit_breaker_concurrent_access(clock):
    """Test breaker counts correctly when failures come from many threads"""
    breaker = CircuitBreaker("dedicated", failure_threshold=1000, clock=clock)

    threads = [threading.Thread(target=_fail, args=(breaker, 50)) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert breaker.get_status()["failure_count"] == 500
    assert breaker.state == CircuitBreakerState.CLOSED
