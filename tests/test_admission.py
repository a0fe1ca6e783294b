"""Tests for the admission gate."""

import asyncio

import pytest

from forge_navigator.services.admission import AdmissionGate


class TestAdmissionGate:
    """Tests for AdmissionGate permits."""

    def test_rejects_non_positive_limit(self) -> None:
        with pytest.raises(ValueError):
            AdmissionGate(limit=0)

    async def test_acquire_and_release(self) -> None:
        """A single permit is taken and returned."""
        gate = AdmissionGate()
        assert gate.available == 1

        await gate.acquire()
        assert gate.available == 0
        assert gate.locked()

        gate.release()
        assert gate.available == 1
        assert not gate.locked()

    def test_over_release_raises(self) -> None:
        """Releasing more than acquired never creates a permit."""
        gate = AdmissionGate()
        with pytest.raises(ValueError):
            gate.release()
        assert gate.available == 1

    async def test_permit_released_on_exception(self) -> None:
        gate = AdmissionGate()
        with pytest.raises(RuntimeError):
            async with gate.permit():
                raise RuntimeError("boom")
        assert gate.available == 1

    async def test_permit_released_on_cancellation(self) -> None:
        """A cancelled holder gives the permit back."""
        gate = AdmissionGate()
        entered = asyncio.Event()

        async def hold() -> None:
            async with gate.permit():
                entered.set()
                await asyncio.sleep(10)

        holder = asyncio.create_task(hold())
        await entered.wait()
        assert gate.available == 0

        holder.cancel()
        with pytest.raises(asyncio.CancelledError):
            await holder
        assert gate.available == 1

    async def test_waiters_are_woken_in_fifo_order(self) -> None:
        """Suspended acquirers get the permit in the order they asked."""
        gate = AdmissionGate()
        order: list[str] = []

        await gate.acquire()

        async def wait_for(name: str) -> None:
            async with gate.permit():
                order.append(name)

        first = asyncio.create_task(wait_for("first"))
        await asyncio.sleep(0)
        second = asyncio.create_task(wait_for("second"))
        await asyncio.sleep(0)

        gate.release()
        await asyncio.gather(first, second)

        assert order == ["first", "second"]
        assert gate.available == 1

    async def test_limit_never_exceeded(self) -> None:
        """At most ``limit`` holders run at once."""
        gate = AdmissionGate(limit=1)
        active = 0
        peak = 0

        async def work() -> None:
            nonlocal active, peak
            async with gate.permit():
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.001)
                active -= 1

        await asyncio.gather(*(work() for _ in range(5)))
        assert peak == 1
