from __future__ import annotations

import json
import logging
from pathlib import Path

from loreforge.logging_utils import LOGGER_NAME, JobContextFilter, configure_logging, job_extra


def test_json_file_log_carries_job_id(tmp_path: Path) -> None:
    logger = configure_logging({"log_dir": str(tmp_path), "json_logs": True, "console_level": "ERROR"})

    logger.info("content ready", extra=job_extra("job-42"))
    logger.info("no job here")
    for handler in logger.handlers:
        handler.flush()

    records = [json.loads(line) for line in (tmp_path / "loreforge.log").read_text(encoding="utf-8").splitlines()]
    assert records[0]["message"] == "content ready"
    assert records[0]["job_id"] == "job-42"
    assert "job_id" not in records[1]


def test_reconfiguring_replaces_handlers(tmp_path: Path) -> None:
    configure_logging({"log_dir": str(tmp_path)})
    logger = configure_logging({})

    assert logger.name == LOGGER_NAME
    assert len(logger.handlers) == 1
    assert logger.propagate is False


def test_job_context_filter_sets_tag() -> None:
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)
    JobContextFilter().filter(record)
    assert record.job_tag == ""

    record.job_id = "abc"
    JobContextFilter().filter(record)
    assert record.job_tag == "[abc] "
