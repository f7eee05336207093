"""Unit tests for the asyncio reader/writer lock."""

import asyncio

import pytest

from instancehub.isolation.lock import RWLock


class TestRWLock:
    """Tests for RWLock."""

    async def test_readers_share(self) -> None:
        lock = RWLock()
        inside = 0
        peak = 0

        async def reader() -> None:
            nonlocal inside, peak
            async with lock.read():
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0.01)
                inside -= 1

        await asyncio.gather(*(reader() for _ in range(5)))

        assert peak == 5
        assert lock.locked is False

    async def test_writer_excludes_readers(self) -> None:
        lock = RWLock()
        events: list[str] = []

        async def writer() -> None:
            async with lock.write():
                events.append("write-start")
                await asyncio.sleep(0.02)
                events.append("write-end")

        async def reader() -> None:
            await asyncio.sleep(0.005)
            async with lock.read():
                events.append("read")

        await asyncio.gather(writer(), reader())

        assert events == ["write-start", "write-end", "read"]

    async def test_waiting_writer_blocks_new_readers(self) -> None:
        """A queued writer goes before readers that arrive after it."""
        lock = RWLock()
        events: list[str] = []
        release_first = asyncio.Event()

        async def first_reader() -> None:
            async with lock.read():
                events.append("read-1")
                await release_first.wait()

        async def writer() -> None:
            await asyncio.sleep(0.005)
            async with lock.write():
                events.append("write")

        async def late_reader() -> None:
            await asyncio.sleep(0.01)
            async with lock.read():
                events.append("read-2")

        tasks = [asyncio.create_task(coro()) for coro in (first_reader, writer, late_reader)]
        await asyncio.sleep(0.02)
        release_first.set()
        await asyncio.gather(*tasks)

        assert events == ["read-1", "write", "read-2"]

    async def test_cancelled_writer_unblocks_readers(self) -> None:
        lock = RWLock()
        release = asyncio.Event()

        async def holder() -> None:
            async with lock.read():
                await release.wait()

        holding = asyncio.create_task(holder())
        await asyncio.sleep(0)
        waiting_writer = asyncio.create_task(_acquire_write(lock))
        await asyncio.sleep(0.01)

        waiting_writer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiting_writer

        async with asyncio.timeout(1):
            async with lock.read():
                pass

        release.set()
        await holding

    async def test_released_on_error(self) -> None:
        lock = RWLock()

        with pytest.raises(RuntimeError):
            async with lock.write():
                raise RuntimeError("boom")

        assert lock.locked is False


async def _acquire_write(lock: RWLock) -> None:
    async with lock.write():
        pass
