from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from ticket_mirror.config import GateSettings
from ticket_mirror.gate.breaker import (
    CircuitHalfOpenExhaustedError,
    CircuitOpenError,
    FailureGate,
    GateConfig,
    GateRejectedError,
    GateState,
    IllegalTransitionError,
)


class Boom(Exception):
    pass


async def _fail() -> None:
    raise Boom("upstream down")


async def _ok() -> str:
    return "ok"


async def _trip(gate: FailureGate, count: int = 5) -> None:
    for _ in range(count):
        with pytest.raises(Boom):
            await gate.execute(_fail)


@pytest.mark.asyncio
async def test_five_failures_open_gate_and_next_call_fails_fast(clock) -> None:
    gate = FailureGate(clock=clock)
    await _trip(gate)

    assert gate.state is GateState.OPEN

    operation = AsyncMock(return_value="unused")
    with pytest.raises(CircuitOpenError) as excinfo:
        await gate.execute(operation)
    operation.assert_not_awaited()
    assert excinfo.value.retry_after == pytest.approx(60.0)


@pytest.mark.asyncio
async def test_error_is_reraised_unchanged(clock) -> None:
    gate = FailureGate(clock=clock)
    error = Boom("specific")

    async def op() -> None:
        raise error

    with pytest.raises(Boom) as excinfo:
        await gate.execute(op)
    assert excinfo.value is error


@pytest.mark.asyncio
async def test_gate_stays_closed_below_minimum_calls(clock) -> None:
    gate = FailureGate(GateConfig(failure_threshold=2, minimum_calls=5), clock=clock)
    await _trip(gate, 4)
    assert gate.state is GateState.CLOSED

    await _trip(gate, 1)
    assert gate.state is GateState.OPEN


@pytest.mark.asyncio
async def test_success_while_closed_clears_failures(clock) -> None:
    gate = FailureGate(clock=clock)
    await _trip(gate, 4)
    assert await gate.execute(_ok) == "ok"
    await _trip(gate, 4)

    assert gate.state is GateState.CLOSED
    assert gate.get_metrics().failure_count == 4


@pytest.mark.asyncio
async def test_failures_outside_monitoring_period_do_not_count(clock) -> None:
    gate = FailureGate(GateConfig(monitoring_period=10.0), clock=clock)
    await _trip(gate, 4)
    clock.advance(11.0)
    await _trip(gate, 1)

    assert gate.state is GateState.CLOSED


@pytest.mark.asyncio
async def test_after_reset_timeout_probe_is_invoked(clock) -> None:
    gate = FailureGate(clock=clock)
    await _trip(gate)
    clock.advance(60.0)

    operation = AsyncMock(return_value="probe")
    assert await gate.execute(operation) == "probe"
    operation.assert_awaited_once()
    assert gate.state is GateState.HALF_OPEN


@pytest.mark.asyncio
async def test_single_probe_success_closes_gate_when_max_is_one(clock) -> None:
    gate = FailureGate(GateConfig(half_open_max_calls=1), clock=clock)
    await _trip(gate)
    clock.advance(61.0)

    await gate.execute(_ok)

    metrics = gate.get_metrics()
    assert metrics.state is GateState.CLOSED
    assert metrics.failure_count == 0
    assert metrics.success_count == 0
    assert metrics.total_calls == 0


@pytest.mark.asyncio
async def test_probe_failure_reopens_gate(clock) -> None:
    gate = FailureGate(clock=clock)
    await _trip(gate)
    clock.advance(60.0)

    with pytest.raises(Boom):
        await gate.execute(_fail)

    assert gate.state is GateState.OPEN
    with pytest.raises(CircuitOpenError):
        await gate.execute(_ok)


@pytest.mark.asyncio
async def test_half_open_probe_budget_is_exhausted(clock) -> None:
    gate = FailureGate(GateConfig(half_open_max_calls=2), clock=clock)
    await _trip(gate)
    clock.advance(60.0)

    await gate.execute(_ok)
    await gate.execute(_ok)
    assert gate.state is GateState.CLOSED

    await _trip(gate)
    clock.advance(60.0)
    await gate.execute(_ok)
    assert gate.get_metrics().half_open_probes_in_flight == 1


@pytest.mark.asyncio
async def test_concurrent_probes_beyond_budget_are_rejected(clock) -> None:
    gate = FailureGate(GateConfig(half_open_max_calls=1), clock=clock)
    await _trip(gate)
    clock.advance(60.0)

    release = asyncio.Event()

    async def slow() -> str:
        await release.wait()
        return "done"

    first = asyncio.create_task(gate.execute(slow))
    await asyncio.sleep(0)
    with pytest.raises(CircuitHalfOpenExhaustedError):
        await gate.execute(_ok)
    release.set()
    assert await first == "done"
    assert gate.state is GateState.CLOSED


@pytest.mark.asyncio
async def test_rejection_errors_share_base_class(clock) -> None:
    gate = FailureGate(clock=clock)
    gate.force_open()
    with pytest.raises(GateRejectedError):
        await gate.execute(_ok)


@pytest.mark.asyncio
async def test_force_open_without_failures_waits_from_state_change(clock) -> None:
    gate = FailureGate(clock=clock)
    gate.force_open()
    clock.advance(30.0)
    with pytest.raises(CircuitOpenError):
        await gate.execute(_ok)

    clock.advance(30.0)
    assert await gate.execute(_ok) == "ok"


@pytest.mark.asyncio
async def test_force_open_after_stale_failure_rejects_next_call(clock) -> None:
    gate = FailureGate(clock=clock)
    await _trip(gate, 1)
    clock.advance(600.0)

    gate.force_open()
    operation = AsyncMock(return_value="unused")
    with pytest.raises(CircuitOpenError) as excinfo:
        await gate.execute(operation)
    operation.assert_not_awaited()
    assert gate.state is GateState.OPEN
    assert excinfo.value.retry_after == pytest.approx(60.0)


@pytest.mark.asyncio
async def test_force_closed_and_reset(clock) -> None:
    gate = FailureGate(clock=clock)
    await _trip(gate)

    gate.force_closed()
    assert gate.state is GateState.CLOSED
    assert await gate.execute(_ok) == "ok"

    await _trip(gate)
    gate.reset()
    metrics = gate.get_metrics()
    assert metrics.state is GateState.CLOSED
    assert metrics.last_failure_time is None
    assert metrics.total_calls == 0


@pytest.mark.asyncio
async def test_health_status(clock) -> None:
    gate = FailureGate(clock=clock)
    await gate.execute(_ok)
    health = gate.get_health_status()
    assert health["healthy"] is True
    assert health["state"] == "CLOSED"
    assert health["details"]["config"]["failure_threshold"] == 5

    await _trip(gate)
    health = gate.get_health_status()
    assert health["healthy"] is False
    assert health["state"] == "OPEN"
    assert health["details"]["time_until_reset"] == pytest.approx(60.0)


def test_config_from_settings() -> None:
    config = GateConfig.from_settings(
        GateSettings(failure_threshold=3, reset_timeout_seconds=5, half_open_max_calls=1)
    )
    assert config.failure_threshold == 3
    assert config.reset_timeout == 5
    assert config.half_open_max_calls == 1
    assert config.minimum_calls == 5


def test_transition_table_rejects_illegal_moves(clock) -> None:
    gate = FailureGate(clock=clock)
    with pytest.raises(IllegalTransitionError):
        gate._transition(GateState.HALF_OPEN)
    assert gate.state is GateState.CLOSED
