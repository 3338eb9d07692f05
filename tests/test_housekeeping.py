"""Tests for periodic maintenance jobs."""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import FakeTransport

from wabot.chat_store import ChatStore
from wabot.housekeeping import Housekeeper, clean_tmp_dir, probe_capabilities
from wabot.session_store import SessionStore
from wabot.supervisor import ConnectionSupervisor, ReconnectPolicy
from wabot.types import ConnectionConfig, ConnectionState


def _housekeeper(tmp_path: Path, **intervals) -> tuple[Housekeeper, ConnectionSupervisor]:
    sup = ConnectionSupervisor(
        FakeTransport(), ConnectionConfig(session_dir=str(tmp_path)), ReconnectPolicy()
    )
    sup.create_connection()
    kwargs = {
        "prekey_interval": 0,
        "tmp_interval": 0,
        "tmp_max_age": 180,
        "flush_interval": 0,
    }
    kwargs.update(intervals)
    keeper = Housekeeper(
        sup,
        SessionStore(tmp_path / "session", bootstrap_tag="Wabot"),
        ChatStore(tmp_path / "store.json"),
        tmp_dir=tmp_path / "tmp",
        **kwargs,
    )
    return keeper, sup


def test_clean_tmp_dir_removes_only_old_files(tmp_path: Path):
    tmp = tmp_path / "tmp"
    tmp.mkdir()
    old = tmp / "old.bin"
    fresh = tmp / "fresh.bin"
    old.write_bytes(b"x")
    fresh.write_bytes(b"y")
    (tmp / "subdir").mkdir()
    past = time.time() - 600
    os.utime(old, (past, past))

    assert clean_tmp_dir(tmp, 180) == 1
    assert not old.exists()
    assert fresh.exists()
    assert (tmp / "subdir").is_dir()


def test_clean_tmp_dir_missing(tmp_path: Path):
    assert clean_tmp_dir(tmp_path / "nope", 180) == 0


def test_probe_capabilities():
    def which(tool: str) -> str | None:
        return "/usr/bin/ffmpeg" if tool == "ffmpeg" else None

    with patch("wabot.housekeeping.shutil.which", side_effect=which):
        caps = probe_capabilities(("ffmpeg", "magick"))
    assert caps == {"ffmpeg": True, "magick": False}


def test_pre_keys_only_cleaned_while_open(tmp_path: Path):
    keeper, sup = _housekeeper(tmp_path)
    session = tmp_path / "session"
    session.mkdir()
    (session / "pre-key-1.json").write_text("{}")

    sup.state = ConnectionState.CONNECTING
    assert keeper.clean_pre_keys() == 0
    assert (session / "pre-key-1.json").exists()

    sup.state = ConnectionState.OPEN
    assert keeper.clean_pre_keys() == 1


def test_flush_chats_writes_connection_cache(tmp_path: Path):
    keeper, sup = _housekeeper(tmp_path)
    sup.connection.chats["a@g.us"] = {"id": "a@g.us"}
    keeper.flush_chats()
    assert ChatStore(tmp_path / "store.json").load() == {"a@g.us": {"id": "a@g.us"}}


@pytest.mark.asyncio
async def test_loops_run_and_stop(tmp_path: Path):
    keeper, sup = _housekeeper(tmp_path, flush_interval=0.01)
    sup.connection.chats["a@g.us"] = {"id": "a@g.us"}

    keeper.start()
    assert len(keeper._tasks) == 1
    await asyncio.sleep(0.05)
    await keeper.stop()

    assert keeper._tasks == []
    assert (tmp_path / "store.json").exists()
    assert (tmp_path / "tmp").is_dir()


@pytest.mark.asyncio
async def test_failing_job_keeps_looping(tmp_path: Path):
    keeper, sup = _housekeeper(tmp_path, tmp_interval=0.01)
    calls = 0

    def flaky() -> int:
        nonlocal calls
        calls += 1
        raise OSError("disk gone")

    keeper.clean_tmp = flaky
    keeper.start()
    await asyncio.sleep(0.08)
    await keeper.stop()
    assert calls >= 2
