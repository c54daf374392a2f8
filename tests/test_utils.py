# tests/test_utils.py
import logging
from pathlib import Path

import pytest

from parser_worker import utils


def test_getenv_helpers(monkeypatch):
    monkeypatch.setenv("PW_STR", "  ")
    monkeypatch.setenv("PW_INT", "42")
    monkeypatch.setenv("PW_BAD_INT", "x")
    monkeypatch.setenv("PW_FLOAT", "0.5")
    monkeypatch.setenv("PW_BOOL", "On")
    monkeypatch.setenv("PW_CSV", " a, ,b ,")

    assert utils.getenv_str("PW_STR", "fallback") == "fallback"
    assert utils.getenv_int("PW_INT", 1, max_val=10) == 10
    assert utils.getenv_int("PW_BAD_INT", 7) == 7
    assert utils.getenv_float("PW_FLOAT", 1.0, min_val=1.0) == 1.0
    assert utils.getenv_bool("PW_BOOL", False) is True
    assert utils.getenv_bool("PW_MISSING", True) is True
    assert utils.getenv_csv("PW_CSV", "") == ("a", "b")


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("http://example.com/a b", "http://example.com/a%20b"),
        ("http://example.com/search?q=a&b=c#top", "http://example.com/search?q=a&b=c#top"),
        ("http://example.com/café", "http://example.com/caf%C3%A9"),
        # existing escapes are not encoded twice
        ("http://example.com/a%20b", "http://example.com/a%20b"),
        ("http://example.com/100%", "http://example.com/100%25"),
        ("  http://example.com/  ", "http://example.com/"),
    ],
)
def test_encode_uri(raw, expected):
    assert utils.encode_uri(raw) == expected


def test_load_object():
    assert utils.load_object("parser_worker.errors:JobTimeoutError").__name__ == "JobTimeoutError"
    assert utils.load_object("parser_worker.errors.CollaboratorError").__name__ == "CollaboratorError"
    with pytest.raises(ValueError):
        utils.load_object("parser_worker.errors:Missing")
    with pytest.raises(ValueError):
        utils.load_object("nodots")


@pytest.mark.asyncio
async def test_retry_async_retries_listed_errors_only():
    calls = {"n": 0}

    @utils.retry_async(3, 1, 5, 0, on=(ConnectionError,))
    async def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise ConnectionError("blip")
        return "ok"

    assert await flaky() == "ok"
    assert calls["n"] == 3

    @utils.retry_async(3, 1, 5, 0, on=(ConnectionError,))
    async def broken():
        calls["n"] += 1
        raise ValueError("not retried")

    calls["n"] = 0
    with pytest.raises(ValueError):
        await broken()
    assert calls["n"] == 1


def test_init_logging_stamps_job_id(tmp_path: Path):
    log_file = tmp_path / "logs" / "worker.log"
    root = logging.getLogger()
    old_handlers, old_level = root.handlers[:], root.level
    try:
        utils.init_logging(log_file, logging.INFO)
        token = utils.set_job_context("42")
        try:
            logging.getLogger("parser_worker.test").info("inside job")
        finally:
            utils.reset_job_context(token)
        logging.getLogger("parser_worker.test").info("outside job")
        for h in root.handlers:
            h.flush()
        text = log_file.read_text(encoding="utf-8")
        assert "[job=42]: inside job" in text
        assert "[job=-]: outside job" in text
    finally:
        for h in root.handlers:
            h.close()
        root.handlers[:] = old_handlers
        root.setLevel(old_level)


@pytest.mark.asyncio
async def test_maybe_await():
    async def coro():
        return 2

    assert await utils.maybe_await(1) == 1
    assert await utils.maybe_await(coro()) == 2
