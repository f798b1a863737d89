from __future__ import annotations

import asyncio
import functools
from unittest.mock import Mock

import pytest

from loreforge.core.task_queue import RetryPolicy, TaskQueue
from loreforge.errors import QueueRejection, RateLimitedError


def test_retry_policy_backoff_is_exponential_and_capped() -> None:
    policy = RetryPolicy(max_attempts=3, backoff_seconds=1.0, max_backoff_seconds=3.0)

    assert [policy.delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]
    assert not policy.exhausted(2)
    assert policy.exhausted(3)
    assert not RetryPolicy(max_attempts=None).exhausted(1000)
    assert RetryPolicy(backoff_seconds=0).delay(5) == 0.0


def test_rejects_non_positive_concurrency_limit() -> None:
    with pytest.raises(ValueError):
        TaskQueue(0)


def test_queue_never_exceeds_concurrency_limit() -> None:
    async def scenario():
        queue = TaskQueue(2)
        running = 0
        peak = 0

        async def work(index):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return index

        results = await asyncio.gather(
            *(queue.add(functools.partial(work, i), f"owner-{i}") for i in range(6))
        )
        return results, peak, queue.active_count

    results, peak, active = asyncio.run(scenario())

    assert results == list(range(6))
    assert peak == 2
    assert active == 0


def test_tasks_start_in_fifo_order() -> None:
    async def scenario():
        queue = TaskQueue(1)
        started = []

        async def work(index):
            started.append(index)
            await asyncio.sleep(0)

        await asyncio.gather(*(queue.add(functools.partial(work, i), "owner") for i in range(5)))
        return started

    assert asyncio.run(scenario()) == [0, 1, 2, 3, 4]


def test_position_and_snapshot_reflect_pending_tasks() -> None:
    async def scenario():
        queue = TaskQueue(1)
        gate = asyncio.Event()

        async def blocked():
            await gate.wait()
            return "done"

        callers = [asyncio.create_task(queue.add(blocked, owner)) for owner in ("a", "b", "c")]
        await asyncio.sleep(0)
        observed = {
            "a": queue.get_position("a"),
            "b": queue.get_position("b"),
            "c": queue.get_position("c"),
            "nobody": queue.get_position("nobody"),
        }
        snapshot = queue.get_snapshot()
        gate.set()
        await asyncio.gather(*callers)
        return observed, snapshot, queue.get_snapshot()

    observed, busy, idle = asyncio.run(scenario())

    assert observed == {"a": 0, "b": 1, "c": 2, "nobody": 0}
    assert busy.length == 2
    assert busy.active_count == 1
    assert busy.processing is True
    assert [item.owner_id for item in busy.items] == ["b", "c"]
    assert busy.as_dict()["items"][0]["owner_id"] == "b"
    assert idle.length == 0 and idle.active_count == 0 and idle.processing is False


def test_rate_limited_task_is_retried_at_front_of_queue() -> None:
    async def scenario():
        metrics = Mock()
        queue = TaskQueue(1, retry_policy=RetryPolicy(max_attempts=None, backoff_seconds=0.2), metrics=metrics)
        calls = []
        attempts = {"a": 0}

        async def flaky():
            calls.append("a")
            attempts["a"] += 1
            if attempts["a"] == 1:
                raise RateLimitedError("slow down")
            return "a-result"

        async def steady():
            calls.append("b")
            return "b-result"

        first = asyncio.create_task(queue.add(flaky, "a", label="npc"))
        second = asyncio.create_task(queue.add(steady, "b"))
        await asyncio.sleep(0.05)
        positions = (queue.get_position("a"), queue.get_position("b"))
        results = await asyncio.gather(first, second)
        return calls, positions, results, metrics

    calls, positions, results, metrics = asyncio.run(scenario())

    assert positions == (1, 2)
    assert calls == ["a", "a", "b"]
    assert results == ["a-result", "b-result"]
    metrics.record_retry.assert_called_once_with("npc")


def test_rate_limit_marker_in_plain_exception_is_recognised() -> None:
    async def scenario():
        queue = TaskQueue(1, retry_policy=RetryPolicy(max_attempts=None, backoff_seconds=0))
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise RuntimeError("429: Rate limited - upstream busy")
            return "ok"

        return await queue.add(flaky, "owner"), len(attempts)

    assert asyncio.run(scenario()) == ("ok", 3)


def test_rate_limit_gives_up_after_max_attempts() -> None:
    async def scenario():
        queue = TaskQueue(1, retry_policy=RetryPolicy(max_attempts=2, backoff_seconds=0))
        attempts = []

        async def always_limited():
            attempts.append(1)
            raise RateLimitedError("quota")

        try:
            await queue.add(always_limited, "owner")
        except QueueRejection as exc:
            return exc, len(attempts)
        return None, len(attempts)

    exc, attempts = asyncio.run(scenario())

    assert attempts == 2
    assert isinstance(exc.cause, RateLimitedError)
    assert "429" in str(exc)


def test_other_failures_reject_with_original_message_and_queue_continues() -> None:
    async def scenario():
        queue = TaskQueue(1)

        async def broken():
            raise ValueError("OpenRouter API error: 500 - boom")

        async def fine():
            return "fine"

        outcomes = await asyncio.gather(
            queue.add(broken, "a"), queue.add(fine, "b"), return_exceptions=True
        )
        return outcomes

    rejected, result = asyncio.run(scenario())

    assert isinstance(rejected, QueueRejection)
    assert str(rejected) == "OpenRouter API error: 500 - boom"
    assert isinstance(rejected.cause, ValueError)
    assert result == "fine"


def test_cancelling_a_pending_caller_drops_its_task() -> None:
    async def scenario():
        queue = TaskQueue(1)
        gate = asyncio.Event()
        executed = []

        async def blocked():
            await gate.wait()

        async def never():
            executed.append(True)

        blocker = asyncio.create_task(queue.add(blocked, "a"))
        waiter = asyncio.create_task(queue.add(never, "b"))
        await asyncio.sleep(0)
        before = len(queue)
        waiter.cancel()
        try:
            await waiter
        except asyncio.CancelledError:
            pass
        after = len(queue)
        gate.set()
        await blocker
        await asyncio.sleep(0)
        return before, after, executed

    before, after, executed = asyncio.run(scenario())

    assert (before, after) == (1, 0)
    assert executed == []


def test_cancelling_a_running_caller_cancels_execution() -> None:
    async def scenario():
        queue = TaskQueue(1)
        state = {"cancelled": False}

        async def long_call():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                state["cancelled"] = True
                raise

        waiter = asyncio.create_task(queue.add(long_call, "a"))
        await asyncio.sleep(0.01)
        waiter.cancel()
        try:
            await waiter
        except asyncio.CancelledError:
            pass
        await asyncio.sleep(0.01)
        return state["cancelled"], queue.active_count

    cancelled, active = asyncio.run(scenario())

    assert cancelled is True
    assert active == 0
