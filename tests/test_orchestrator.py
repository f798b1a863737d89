from __future__ import annotations

import asyncio
import copy
from unittest.mock import Mock

from loreforge.config import DEFAULT_CONFIG
from loreforge.connectors import ModelResponse
from loreforge.core.job_store import JobStatus, JobStore
from loreforge.core.orchestrator import GenerationRequest, JobOrchestrator
from loreforge.core.task_queue import RetryPolicy, TaskQueue
from loreforge.endpoints import resolve_endpoints
from loreforge.errors import AssetFailure, ErrorKind, RateLimitedError, UpstreamError
from loreforge.status import Stage, user_message


class FakeContent:
    """Replays canned responses; records the job states seen at call time."""

    def __init__(self, store: JobStore, responses) -> None:
        self.store = store
        self.responses = list(responses)
        self.calls = []
        self.observed = []

    async def generate(self, endpoint, prompt):
        self.calls.append((endpoint.kind.value, prompt))
        self.observed.append([(job.status, job.progress) for job in self.store.all_active()])
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, asyncio.Event):
            await item.wait()
            return ModelResponse(text="{}")
        return item


class FakeAssets:
    def __init__(self, store: JobStore, result) -> None:
        self.store = store
        self.result = result
        self.calls = []
        self.observed = []

    async def generate(self, url, prompt, owner_id):
        self.calls.append((url, prompt, owner_id))
        self.observed.append([(job.status, job.progress, job.content) for job in self.store.all_active()])
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


def _reply(text: str, **kwargs) -> ModelResponse:
    return ModelResponse(text=text, elapsed=kwargs.pop("elapsed", 1.5), tokens=kwargs.pop("tokens", 42), **kwargs)


def _build(responses, asset_result="data:image/png;base64,AAA", *, policy=None, limit=3):
    store = JobStore()
    metrics = Mock()
    content = FakeContent(store, responses)
    assets = FakeAssets(store, asset_result)
    orchestrator = JobOrchestrator(
        queue=TaskQueue(limit, retry_policy=policy or RetryPolicy(backoff_seconds=0), metrics=metrics),
        store=store,
        content=content,
        assets=assets,
        endpoints=resolve_endpoints(copy.deepcopy(DEFAULT_CONFIG)),
        metrics=metrics,
    )
    return orchestrator, store, content, assets, metrics


def _run(orchestrator, request):
    async def scenario():
        job_id = orchestrator.submit(request)
        return await orchestrator.wait(job_id)

    return asyncio.run(scenario())


def test_content_only_kind_completes_without_asset() -> None:
    orchestrator, store, content, assets, metrics = _build([_reply('{"title": "The Drowned Bell"}')])

    job = _run(orchestrator, GenerationRequest("quest", "a haunted lighthouse", owner_id="u1"))

    assert job.status is JobStatus.COMPLETE
    assert job.progress == 100
    assert job.content["title"] == "The Drowned Bell"
    assert job.content["difficulty"] == "Medium"
    assert job.asset is None
    assert assets.calls == []
    assert content.observed == [[(JobStatus.GENERATING, 10)]]
    assert 'a haunted lighthouse' in content.calls[0][1]
    metrics.record_success.assert_called_once_with("quest", elapsed=1.5, tokens=42)


def test_asset_kind_runs_second_stage_and_attaches_asset() -> None:
    orchestrator, store, content, assets, _ = _build(
        [_reply('```json\n{"name": "Mira", "race": "Elf", "class": "Ranger", "appearance": "green cloak"}\n```')]
    )

    job = _run(orchestrator, GenerationRequest("character", "a wary ranger", owner_id="u7"))

    assert job.status is JobStatus.COMPLETE
    assert job.asset == "data:image/png;base64,AAA"
    assert job.content["name"] == "Mira"
    url, prompt, owner = assets.calls[0]
    assert url == "http://localhost:3000/api/generate-portrait"
    assert prompt == "D&D character portrait: Mira, Elf Ranger, green cloak"
    assert owner == "u7"
    [(status, progress, content_seen)] = assets.observed[0]
    assert (status, progress) == (JobStatus.IMAGE_GENERATING, 80)
    assert content_seen["name"] == "Mira"


def test_skip_asset_completes_after_content() -> None:
    orchestrator, _, _, assets, _ = _build([_reply('{"name": "Blade of Dawn"}')])

    job = _run(orchestrator, GenerationRequest("item", "a sunlit sword", skip_asset=True))

    assert job.status is JobStatus.COMPLETE
    assert assets.calls == []


def test_asset_failure_degrades_to_content_only() -> None:
    orchestrator, _, _, _, metrics = _build([_reply('{"name": "Mira"}')], AssetFailure("No image generated"))

    job = _run(orchestrator, GenerationRequest("npc", "a smuggler"))

    assert job.status is JobStatus.COMPLETE
    assert job.content["name"] == "Mira"
    assert job.asset is None
    assert job.asset_error == "No image generated"
    assert job.error is None
    metrics.record_asset_failure.assert_called_once_with("npc")


def test_extraction_failure_fails_job_with_failure_kind() -> None:
    orchestrator, _, _, _, metrics = _build([_reply("I cannot create that NPC.")])

    job = _run(orchestrator, GenerationRequest("npc", "a smuggler"))

    assert job.status is JobStatus.ERROR
    assert job.error == "NoJsonFound"
    assert job.error_kind is ErrorKind.MALFORMED_RESPONSE
    assert user_message(job) == "Failed to extract NPC data from AI response"
    metrics.record_failure.assert_called_once_with("npc", "malformed_response")


def test_truncated_reply_is_repaired() -> None:
    orchestrator, _, _, _, _ = _build(
        [_reply('{"name": "Old Road", "landmarks": ["Tor"], "rulers": {"king": "Aldric"}, "history": "Long ag', truncated=True)]
    )

    job = _run(orchestrator, GenerationRequest("world", "", skip_asset=True))

    assert job.status is JobStatus.COMPLETE
    assert job.content["name"] == "Old Road"
    assert job.content["legends"] == ["Local myths"]


def test_upstream_rejection_message_is_surfaced_verbatim() -> None:
    orchestrator, _, _, _, _ = _build([UpstreamError("OpenRouter API error: 500 - boom", status_code=500)])

    job = _run(orchestrator, GenerationRequest("encounter", "goblin ambush"))

    assert job.status is JobStatus.ERROR
    assert job.error == "OpenRouter API error: 500 - boom"
    assert job.error_kind is ErrorKind.UPSTREAM
    assert user_message(job) == "Failed to generate encounter. Please try again."


def test_rate_limit_is_retried_then_succeeds() -> None:
    orchestrator, _, content, _, metrics = _build(
        [RateLimitedError("busy"), _reply('{"title": "Second Try"}')]
    )

    job = _run(orchestrator, GenerationRequest("quest", "rescue", owner_id="u1"))

    assert job.status is JobStatus.COMPLETE
    assert len(content.calls) == 2
    metrics.record_retry.assert_called_once_with("quest")


def test_rate_limit_exhaustion_fails_job() -> None:
    orchestrator, _, _, _, _ = _build(
        [RateLimitedError("busy"), RateLimitedError("still busy")],
        policy=RetryPolicy(max_attempts=2, backoff_seconds=0),
    )

    job = _run(orchestrator, GenerationRequest("campaign", "pirates"))

    assert job.status is JobStatus.ERROR
    assert job.error == "429: Rate limited - still busy"
    assert job.error_kind is ErrorKind.RATE_LIMITED
    assert user_message(job) == "AI service is currently busy. Please wait a moment and try again."


def test_cancel_removes_job_and_stops_its_work() -> None:
    async def scenario():
        gate = asyncio.Event()
        orchestrator, store, content, _, _ = _build([gate])
        job_id = orchestrator.submit(GenerationRequest("npc", "a spy"))
        await asyncio.sleep(0.01)
        running_before = orchestrator.running
        cancelled = orchestrator.cancel(job_id)
        await asyncio.sleep(0.01)
        return job_id, running_before, cancelled, store.by_id(job_id), orchestrator.running, orchestrator.queue.active_count

    job_id, running_before, cancelled, job, running_after, active = asyncio.run(scenario())

    assert running_before == [job_id]
    assert cancelled is True
    assert job is None
    assert running_after == []
    assert active == 0


def test_describe_reports_queue_position_for_pending_job() -> None:
    async def scenario():
        gate = asyncio.Event()
        orchestrator, _, _, _, _ = _build([gate, _reply('{"name": "x"}')], limit=1)
        first = orchestrator.submit(GenerationRequest("item", "", owner_id="a", skip_asset=True))
        second = orchestrator.submit(GenerationRequest("item", "", owner_id="b", skip_asset=True))
        await asyncio.sleep(0.01)
        views = orchestrator.describe(first), orchestrator.describe(second)
        snapshot = orchestrator.queue_snapshot()
        gate.set()
        await orchestrator.wait(first)
        await orchestrator.wait(second)
        return views, snapshot

    (running, queued), snapshot = asyncio.run(scenario())

    assert running.stage is Stage.GENERATING
    assert queued.stage is Stage.QUEUED
    assert queued.queue_position == 1
    assert queued.message == "Position 1 in queue..."
    assert queued.estimated_time == 30
    assert snapshot.length == 1


def test_retry_creates_fresh_job_and_drops_failed_one() -> None:
    async def scenario():
        orchestrator, store, content, _, _ = _build(
            [UpstreamError("boom"), _reply('{"title": "Again"}')]
        )
        failed_id = orchestrator.submit(GenerationRequest("quest", "lost cat", {"difficulty": "Easy"}, "u3"))
        await orchestrator.wait(failed_id)
        new_id = orchestrator.retry(failed_id)
        job = await orchestrator.wait(new_id)
        return failed_id, new_id, job, store.by_id(failed_id), content.calls

    failed_id, new_id, job, old, calls = asyncio.run(scenario())

    assert new_id != failed_id
    assert old is None
    assert job.status is JobStatus.COMPLETE
    assert job.form_data == {"difficulty": "Easy"}
    assert job.owner_id == "u3"
    assert calls[0][1] == calls[1][1]


def test_retry_refuses_jobs_that_did_not_fail() -> None:
    async def scenario():
        orchestrator, _, _, _, _ = _build([_reply('{"title": "Fine"}')])
        job_id = orchestrator.submit(GenerationRequest("quest", "ok"))
        await orchestrator.wait(job_id)
        try:
            orchestrator.retry(job_id)
        except ValueError as exc:
            return str(exc)
        return None

    assert "Only failed jobs" in asyncio.run(scenario())


def test_job_removed_after_content_does_not_queue_asset() -> None:
    orchestrator, store, _, assets, metrics = _build(
        [_reply('{"name": "Mira", "race": "Elf", "class": "Ranger", "appearance": "green cloak"}')]
    )
    metrics.record_success.side_effect = lambda *args, **kwargs: [store.remove(job.id) for job in store.all_active()]

    job = _run(orchestrator, GenerationRequest("character", "a wary ranger"))

    assert job is None
    assert assets.calls == []
    assert orchestrator.queue.active_count == 0
