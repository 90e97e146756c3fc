"""Shared test fixtures for the steamdl test suite."""
from __future__ import annotations

import os
import stat
from pathlib import Path
from typing import List

import pytest

from steamdl.config import CoreSettings
from steamdl.jobs.models import LifecycleEvent
from steamdl.jobs.scheduler import JobScheduler
from steamdl.jobs.store import JobStore


# Behaviour is selected by the target argument; the destination is $2.
FAKE_TOOL = r"""#!/bin/sh
target="$1"
dest="$2"
case "$target" in
  ok)
    echo "Logging in user 'anonymous' to Steam Public...OK"
    echo "Downloading item 431960 ..."
    echo " Update state (0x61) downloading, progress: 25.00 (25 / 100)"
    echo " Update state (0x61) downloading, progress: 10.00 (10 / 100)"
    echo " Update state (0x61) downloading, progress: 80.00 (80 / 100)"
    mkdir -p "$dest"
    echo payload > "$dest/item.bin"
    sleep 0.05
    echo "Success. Downloaded item 431960 to \"$dest\" (8 bytes)"
    exit 0
    ;;
  slow)
    echo " Update state (0x61) downloading, progress: 50.00 (50 / 100)"
    sleep 0.5
    mkdir -p "$dest"
    echo payload > "$dest/item.bin"
    exit 0
    ;;
  spam)
    i=1
    while [ $i -le 100 ]; do
      echo " Update state (0x61) downloading, progress: $i.00 ($i / 100)"
      i=$((i + 1))
    done
    mkdir -p "$dest"
    echo payload > "$dest/item.bin"
    exit 0
    ;;
  marker)
    echo " Update state (0x61) downloading, progress: 40.00 (40 / 100)"
    echo "ERROR! Download item 431960 failed (Access Denied)."
    sleep 30
    exit 0
    ;;
  exit3)
    echo "something went sideways" >&2
    exit 3
    ;;
  empty)
    exit 0
    ;;
  hang)
    echo " Update state (0x61) downloading, progress: 5.00 (5 / 100)"
    sleep 30
    ;;
  chatty)
    echo " Update state (0x61) downloading, progress: 5.00 (5 / 100)"
    echo " Update state (0x61) downloading, progress: 6.00 (6 / 100)"
    sleep 30
    ;;
  quiet)
    exec >/dev/null 2>&1
    sleep 30
    ;;
  forked)
    echo " Update state (0x61) downloading, progress: 90.00 (90 / 100)"
    mkdir -p "$dest"
    echo payload > "$dest/item.bin"
    sleep 30 &
    exit 0
    ;;
  stubborn)
    trap '' TERM
    echo " Update state (0x61) downloading, progress: 5.00 (5 / 100)"
    sleep 30
    ;;
  *)
    echo "unknown target $target" >&2
    exit 2
    ;;
esac
"""


class StubAudit:
    def __init__(self) -> None:
        self.events: List[LifecycleEvent] = []

    async def record(self, event: LifecycleEvent) -> None:
        self.events.append(event)

    def kinds(self, job_id: str | None = None) -> List[str]:
        return [e.kind for e in self.events if job_id is None or e.job_id == job_id]


@pytest.fixture
def fake_tool(tmp_path: Path) -> Path:
    path = tmp_path / "fake-workshop-download"
    path.write_text(FAKE_TOOL)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def settings(tmp_path: Path, fake_tool: Path) -> CoreSettings:
    return CoreSettings(
        tool_path=str(fake_tool),
        download_root=tmp_path / "downloads",
        job_db_path=":memory:",
        max_runtime_seconds=10.0,
        kill_grace_seconds=1.0,
        retention_seconds=60.0,
        progress_save_interval=0.0,
        subscriber_buffer=64,
    )


@pytest.fixture
async def store():
    s = JobStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def audit() -> StubAudit:
    return StubAudit()


@pytest.fixture
async def scheduler(store, settings, audit):
    sched = JobScheduler(store, settings=settings, audit=audit)
    yield sched
    await sched.shutdown()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep developer STEAMDL_* variables out of the settings under test."""
    for key in list(os.environ):
        if key.startswith("STEAMDL_"):
            monkeypatch.delenv(key, raising=False)
