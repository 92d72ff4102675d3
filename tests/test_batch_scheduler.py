import asyncio

import pytest

from perfcore.optimization.batch_scheduler import BatchOperation, BatchProcessor
from perfcore.optimization.exceptions import BatchError
from perfcore.optimization.scheduler import OperationScheduler, Tier


class RecordingHandler:
    """记录每次调用的块内容，返回负载的大写形式"""

    def __init__(self):
        self.chunks: list[list] = []

    async def __call__(self, payloads):
        self.chunks.append(list(payloads))
        return [str(p).upper() for p in payloads]


def make_processor(clock=None, **kwargs):
    scheduler = OperationScheduler(max_concurrent=10, retry_base_delay=0)
    processor = BatchProcessor(scheduler, clock=clock, **kwargs)
    handler = RecordingHandler()
    processor.register_handler("validate", handler)
    return processor, handler


class TestBatchProcessorGrouping:
    """批次合并测试类"""

    @pytest.mark.asyncio
    async def test_full_group_split_into_chunks(self):
        processor, handler = make_processor(batch_size=10)

        futures = [processor.submit("validate", f"doc{i}") for i in range(25)]
        results = await asyncio.gather(*futures)

        assert [len(c) for c in handler.chunks] == [10, 10, 5]
        assert results == [f"DOC{i}" for i in range(25)]

    @pytest.mark.asyncio
    async def test_partial_group_waits_for_flush(self, fake_clock, settle):
        processor, handler = make_processor(clock=fake_clock, batch_size=10, flush_interval=0.05)
        await processor.start()
        await settle()

        futures = [processor.submit("validate", f"doc{i}") for i in range(3)]
        await settle()
        assert handler.chunks == []
        assert processor.pending_count() == 3

        fake_clock.advance(0.05)
        results = await asyncio.gather(*futures)
        assert results == ["DOC0", "DOC1", "DOC2"]
        assert handler.chunks == [["doc0", "doc1", "doc2"]]

        await processor.stop()

    @pytest.mark.asyncio
    async def test_tiers_grouped_separately(self):
        processor, handler = make_processor(batch_size=10)

        high = [processor.submit("validate", f"h{i}", tier=Tier.HIGH) for i in range(2)]
        medium = [processor.submit("validate", f"m{i}") for i in range(2)]
        await processor.flush_all(wait=True)

        assert sorted(handler.chunks) == [["h0", "h1"], ["m0", "m1"]]
        assert [f.result() for f in high] == ["H0", "H1"]
        assert [f.result() for f in medium] == ["M0", "M1"]

    @pytest.mark.asyncio
    async def test_types_grouped_separately(self):
        processor, handler = make_processor(batch_size=10)

        async def complete(payloads):
            return [f"complete:{p}" for p in payloads]

        processor.register_handler("completion", complete)
        a = processor.submit("validate", "x")
        b = processor.submit("completion", "y")
        await processor.flush_all(wait=True)

        assert a.result() == "X"
        assert b.result() == "complete:y"
        assert handler.chunks == [["x"]]

    @pytest.mark.asyncio
    async def test_enqueue_batch_operation(self):
        processor, _ = make_processor(batch_size=1)
        future = processor.enqueue(BatchOperation(operation_type="validate", payload="one"))
        assert await future == "ONE"


class TestBatchProcessorErrors:
    """批次失败测试类"""

    @pytest.mark.asyncio
    async def test_handler_error_fails_every_member(self):
        processor, _ = make_processor(batch_size=3)

        async def broken(payloads):
            raise ValueError("schema unavailable")

        processor.register_handler("validate", broken)
        futures = [processor.submit("validate", i) for i in range(3)]
        results = await asyncio.gather(*futures, return_exceptions=True)

        assert all(isinstance(r, BatchError) for r in results)
        assert results[0] is results[1] is results[2]
        assert isinstance(results[0].__cause__, ValueError)
        assert processor.get_stats().error_count == 1

    @pytest.mark.asyncio
    async def test_result_length_mismatch(self):
        processor, _ = make_processor(batch_size=2)

        async def short(payloads):
            return payloads[:1]

        processor.register_handler("validate", short)
        futures = [processor.submit("validate", i) for i in range(2)]
        results = await asyncio.gather(*futures, return_exceptions=True)

        assert all(isinstance(r, BatchError) for r in results)
        assert results[0].chunk_size == 2

    @pytest.mark.asyncio
    async def test_unregistered_type(self):
        processor, _ = make_processor(batch_size=1)

        with pytest.raises(BatchError) as exc_info:
            await processor.submit("hover", "x")
        assert exc_info.value.operation_type == "hover"

    @pytest.mark.asyncio
    async def test_failed_chunk_does_not_affect_other_chunks(self):
        processor, _ = make_processor(batch_size=2)
        calls = 0

        async def fails_first(payloads):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ValueError("first chunk broken")
            return payloads

        processor.register_handler("validate", fails_first)
        futures = [processor.submit("validate", i) for i in range(4)]
        results = await asyncio.gather(*futures, return_exceptions=True)

        assert isinstance(results[0], BatchError)
        assert isinstance(results[1], BatchError)
        assert results[2:] == [2, 3]


class TestBatchProcessorCallbacks:
    """回调测试类"""

    @pytest.mark.asyncio
    async def test_callbacks_in_submission_order(self):
        processor, _ = make_processor(batch_size=3)
        seen: list[str] = []

        futures = [processor.submit("validate", f"d{i}", callback=seen.append) for i in range(3)]
        await asyncio.gather(*futures)
        assert seen == ["D0", "D1", "D2"]

    @pytest.mark.asyncio
    async def test_callback_error_is_isolated(self):
        processor, _ = make_processor(batch_size=2)
        seen: list[str] = []

        def explode(result):
            raise RuntimeError("boom")

        first = processor.submit("validate", "a", callback=explode)
        second = processor.submit("validate", "b", callback=seen.append)
        assert await asyncio.gather(first, second) == ["A", "B"]
        assert seen == ["B"]

    @pytest.mark.asyncio
    async def test_reentrant_enqueue_from_callback(self):
        processor, handler = make_processor(batch_size=1)
        followups: list[asyncio.Future] = []

        def chain(result):
            followups.append(processor.submit("validate", f"after-{result}"))

        await processor.submit("validate", "first", callback=chain)
        assert len(followups) == 1
        assert await followups[0] == "AFTER-FIRST"
        assert handler.chunks == [["first"], ["after-FIRST"]]


class TestBatchProcessorLifecycle:
    """生命周期与统计测试类"""

    @pytest.mark.asyncio
    async def test_disabled_dispatches_each_operation(self):
        processor, handler = make_processor(batch_size=10, enabled=False)

        futures = [processor.submit("validate", i) for i in range(3)]
        assert await asyncio.gather(*futures) == ["0", "1", "2"]
        assert handler.chunks == [[0], [1], [2]]

    @pytest.mark.asyncio
    async def test_stop_flushes_pending(self):
        processor, handler = make_processor(batch_size=10)

        futures = [processor.submit("validate", i) for i in range(3)]
        await processor.stop()

        assert all(f.done() for f in futures)
        assert handler.chunks == [[0, 1, 2]]

    @pytest.mark.asyncio
    async def test_cancelled_flush_wait_keeps_chunks_running(self, settle):
        scheduler = OperationScheduler(max_concurrent=10)
        processor = BatchProcessor(scheduler, batch_size=10)
        release = asyncio.Event()

        async def slow_handler(payloads):
            await release.wait()
            return [p * 2 for p in payloads]

        processor.register_handler("format", slow_handler)
        futures = [processor.submit("format", i) for i in range(3)]

        waiter = asyncio.create_task(processor.flush_all(wait=True))
        await settle()
        waiter.cancel()
        await settle()
        release.set()

        assert await asyncio.gather(*futures) == [0, 2, 4]
        assert waiter.cancelled()

    @pytest.mark.asyncio
    async def test_stats(self):
        processor, _ = make_processor(batch_size=4)

        futures = [processor.submit("validate", i) for i in range(6)]
        assert processor.get_stats().pending_operations == 6
        await processor.flush_all(wait=True)
        await asyncio.gather(*futures)

        stats = processor.get_stats()
        assert stats.total_operations == 6
        assert stats.batched_operations == 6
        assert stats.chunk_count == 2
        assert stats.avg_batch_size == pytest.approx(3.0)
        assert stats.pending_operations == 0

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            BatchProcessor(OperationScheduler(), batch_size=0)
