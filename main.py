"""Command-line entry point for loreforge."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Sequence

from loreforge.core import JobMaintenance, JobStatus
from loreforge.core.orchestrator import GenerationRequest
from loreforge.runtime import LoreForgeRuntime, bootstrap, open_store
from loreforge.schemas import GenerationKind
from loreforge.status import describe, format_time, user_message

KIND_CHOICES = [kind.value for kind in GenerationKind]
STATUS_CHOICES = [status.value for status in JobStatus]


def parse_params(values: Sequence[str]) -> Dict[str, Any]:
    """Turn ``key=value`` pairs into form data; values may be JSON literals."""

    params: Dict[str, Any] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise argparse.ArgumentTypeError(f"Expected key=value, got {item!r}")
        try:
            value: Any = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
        params[key.strip()] = value
    return params


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="loreforge", description="Queued tabletop content generation")
    parser.add_argument("--config", help="Extra YAML config layered over the defaults")
    parser.add_argument("--log-level", help="Console log level (DEBUG, INFO, ...)")
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Generate one piece of content and print it as JSON")
    gen.add_argument("kind", choices=KIND_CHOICES)
    gen.add_argument("-p", "--prompt", default="", help="Free-form description")
    gen.add_argument("--param", action="append", default=[], metavar="KEY=VALUE", help="Form field (repeatable)")
    gen.add_argument("--owner", default="cli", help="Owner id used for queue fairness")
    gen.add_argument("--skip-asset", action="store_true", help="Do not request an image")

    jobs = sub.add_parser("jobs", help="List persisted jobs")
    jobs.add_argument("--kind", choices=KIND_CHOICES)
    jobs.add_argument("--status", choices=STATUS_CHOICES)
    jobs.add_argument("--json", action="store_true", help="Print full records as JSON")

    show = sub.add_parser("status", help="Show one job")
    show.add_argument("job_id")

    retry = sub.add_parser("retry", help="Re-run a failed job under a new id")
    retry.add_argument("job_id")

    sub.add_parser("cleanup", help="Fail stale jobs and purge expired settled jobs")
    return parser


# ----------------------------------------------------------------------
def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _report(job) -> int:
    _print_json(describe(job).as_dict())
    return 0 if job.status is JobStatus.COMPLETE else 2


async def _generate(runtime: LoreForgeRuntime, request: GenerationRequest) -> int:
    async with runtime:
        runtime.shutdown.install()
        try:
            job = await runtime.generate(request)
        finally:
            runtime.shutdown.uninstall()
    return _report(job)


async def _retry(runtime: LoreForgeRuntime, job_id: str) -> int:
    async with runtime:
        runtime.shutdown.install()
        try:
            job = await runtime.generate_retry(job_id)
        finally:
            runtime.shutdown.uninstall()
    return _report(job)


def _list_jobs(store, args) -> int:
    jobs = store.all_active() + store.all_settled()
    if args.kind:
        jobs = [job for job in jobs if job.kind.value == args.kind]
    if args.status:
        jobs = [job for job in jobs if job.status.value == args.status]
    if args.json:
        _print_json([job.to_dict() for job in jobs])
        return 0
    if not jobs:
        print("No jobs.")
        return 0
    for job in jobs:
        line = f"{job.id}  {job.kind.value:<9}  {job.status.value:<16}  {job.progress:>3}%  {format_time(job.elapsed)}"
        message = user_message(job)
        if message:
            line += f"  {message}"
        print(line)
    return 0


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config, logger = bootstrap(args.config, log_level=args.log_level)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    try:
        if args.command == "generate":
            try:
                form_data = parse_params(args.param)
            except argparse.ArgumentTypeError as exc:
                parser.error(str(exc))
            request = GenerationRequest(
                kind=args.kind,
                prompt=args.prompt,
                form_data=form_data,
                owner_id=args.owner,
                skip_asset=args.skip_asset,
            )
            return asyncio.run(_generate(LoreForgeRuntime(config, logger), request))
        if args.command == "retry":
            try:
                return asyncio.run(_retry(LoreForgeRuntime(config, logger), args.job_id))
            except KeyError:
                logger.error("Job %s not found", args.job_id)
                return 1
            except ValueError as exc:
                logger.error("%s", exc)
                return 1

        store = open_store(config, logger)
        if args.command == "jobs":
            return _list_jobs(store, args)
        if args.command == "status":
            job = store.by_id(args.job_id)
            if job is None:
                logger.error("Job %s not found", args.job_id)
                return 1
            _print_json(describe(job).as_dict())
            return 0
        if args.command == "cleanup":
            jobs_cfg = config.get("jobs", {})
            report = JobMaintenance(
                store,
                stale_after=float(jobs_cfg.get("stale_after_seconds", 600)),
                retain_settled=float(jobs_cfg.get("retain_settled_seconds", 86400)),
                logger=logger,
            ).run_once()
            print(f"Failed {len(report.stale)} stale job(s); purged {len(report.purged)} settled job(s).")
            return 0
    except KeyboardInterrupt:  # pragma: no cover - manual interruption
        logger.warning("Interrupted by user.")
        return 1
    parser.error(f"Unknown command {args.command!r}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
