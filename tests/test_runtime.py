from __future__ import annotations

import asyncio
import copy
import json
from pathlib import Path
from unittest.mock import Mock

import httpx

from loreforge.config import DEFAULT_CONFIG
from loreforge.core.job_store import JobStatus
from loreforge.core.orchestrator import GenerationRequest
from loreforge.runtime import LoreForgeRuntime, retry_policy_from_config


def _config(tmp_path: Path) -> dict:
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["paths"] = {"data": str(tmp_path), "logs": str(tmp_path / "logs"), "metrics": str(tmp_path / "metrics")}
    config["jobs"]["snapshot_path"] = str(tmp_path / "jobs.json")
    config["metrics"]["include_system"] = False
    return config


def test_retry_policy_from_config_allows_unbounded_attempts() -> None:
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["queue"]["rate_limit"]["max_attempts"] = None

    policy = retry_policy_from_config(config)

    assert policy.max_attempts is None
    assert policy.backoff_seconds == 1.0


def test_runtime_generates_content_and_asset_end_to_end(tmp_path: Path) -> None:
    def content_handler(request: httpx.Request) -> httpx.Response:
        body = {"name": "Thorn", "race": "Dwarf", "class": "Cleric", "appearance": "braided beard"}
        return httpx.Response(
            200,
            json={"choices": [{"message": {"content": json.dumps(body)}, "finish_reason": "stop"}]},
        )

    def asset_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"imageUrl": "data:image/png;base64,QUJD", "portrait": "ignored"})

    async def scenario():
        runtime = LoreForgeRuntime(
            _config(tmp_path),
            Mock(),
            content_transport=httpx.MockTransport(content_handler),
            asset_transport=httpx.MockTransport(asset_handler),
        )
        async with runtime:
            return await runtime.generate(GenerationRequest("character", "a stout healer", owner_id="u1"))

    job = asyncio.run(scenario())

    assert job.status is JobStatus.COMPLETE
    assert job.content["name"] == "Thorn"
    assert job.asset == "data:image/png;base64,QUJD"
    snapshot = json.loads((tmp_path / "jobs.json").read_text(encoding="utf-8"))
    assert snapshot["settled"][0][0] == job.id
    assert list((tmp_path / "metrics").glob("run-summary-*.json"))


def test_runtime_retry_replaces_failed_job_with_new_id(tmp_path: Path) -> None:
    calls = []

    def content_handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(500, json={"error": {"message": "boom"}})
        body = {"title": "The Fog of Greyhollow", "objectives": "Find the lighthouse keeper"}
        return httpx.Response(
            200,
            json={"choices": [{"message": {"content": json.dumps(body)}, "finish_reason": "stop"}]},
        )

    async def scenario():
        runtime = LoreForgeRuntime(
            _config(tmp_path),
            Mock(),
            content_transport=httpx.MockTransport(content_handler),
            asset_transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        async with runtime:
            failed = await runtime.generate(GenerationRequest("quest", "a foggy hamlet", owner_id="u1"))
            retried = await runtime.generate_retry(failed.id)
            return failed, retried, runtime.store.by_id(failed.id)

    failed, retried, old_record = asyncio.run(scenario())

    assert failed.status is JobStatus.ERROR
    assert retried.id != failed.id
    assert retried.status is JobStatus.COMPLETE
    assert retried.content["title"] == "The Fog of Greyhollow"
    assert retried.content["objectives"] == ["Find the lighthouse keeper"]
    assert old_record is None
