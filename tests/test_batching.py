import asyncio

import pytest

from pipeline.batching import process_in_batches
from pipeline.cancellation import CancellationToken
from pipeline.errors import OperationCancelled


class RecordingToken(CancellationToken):
    def __init__(self):
        super().__init__()
        self.sleeps = []

    async def sleep(self, seconds: float) -> None:
        self.raise_if_cancelled()
        self.sleeps.append(seconds)


class TestProcessInBatches:
    @pytest.mark.asyncio
    async def test_preserves_input_order(self):
        async def task(item, index):
            # later items finish first
            await asyncio.sleep((10 - index) * 0.001)
            return item * 10

        results = await process_in_batches(list(range(10)), 5, 0, task)
        assert results == [i * 10 for i in range(10)]

    @pytest.mark.asyncio
    async def test_concurrency_never_exceeds_batch_size(self):
        in_flight = 0
        peak = 0

        async def task(item, index):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.005)
            in_flight -= 1
            return index

        results = await process_in_batches(list(range(10)), 3, 0, task)
        assert peak == 3
        assert results == list(range(10))

    @pytest.mark.asyncio
    async def test_batch_callback_and_delay_between_batches_only(self):
        token = RecordingToken()
        completed = []

        async def task(item, index):
            return item

        await process_in_batches(
            list(range(7)), 3, 500, task,
            on_batch_complete=lambda: completed.append(True),
            cancel_token=token,
        )
        assert len(completed) == 3
        assert token.sleeps == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_task_failure_propagates(self):
        async def task(item, index):
            if index == 2:
                raise ValueError("bad chunk")
            return item

        with pytest.raises(ValueError, match="bad chunk"):
            await process_in_batches(list(range(4)), 2, 0, task)

    @pytest.mark.asyncio
    async def test_cancel_between_batches(self):
        token = CancellationToken()
        seen = []

        async def task(item, index):
            seen.append(index)
            return item

        with pytest.raises(OperationCancelled):
            await process_in_batches(
                list(range(6)), 2, 0, task,
                on_batch_complete=lambda: token.cancel("stop"),
                cancel_token=token,
            )
        assert seen == [0, 1]

    @pytest.mark.asyncio
    async def test_empty_input(self):
        async def task(item, index):
            return item

        assert await process_in_batches([], 3, 0, task) == []

    @pytest.mark.asyncio
    async def test_rejects_zero_batch_size(self):
        async def task(item, index):
            return item

        with pytest.raises(ValueError):
            await process_in_batches([1], 0, 0, task)

    @pytest.mark.asyncio
    async def test_failure_cancels_rest_of_batch(self):
        started = []
        finished = []
        cancelled = []

        async def task(item, index):
            started.append(index)
            if index == 0:
                raise ValueError("rejected")
            try:
                await asyncio.sleep(0.05)
            except asyncio.CancelledError:
                cancelled.append(index)
                raise
            finished.append(index)
            return item

        with pytest.raises(ValueError, match="rejected"):
            await process_in_batches(list(range(3)), 3, 0, task)

        assert started == [0, 1, 2]
        assert sorted(cancelled) == [1, 2]
        await asyncio.sleep(0.1)
        assert finished == []
