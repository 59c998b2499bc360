from __future__ import annotations

import os
import stat
import time
from pathlib import Path

import pytest

from nccl_harness.config import HarnessConfig, build_config


FAKE_LAUNCHER = """#!/bin/sh
if [ -n "$FAKE_SPAWN_LOG" ]; then
    echo "$*" >> "$FAKE_SPAWN_LOG"
fi
echo "# nThread 1 nGpus 1 minBytes 1048576 maxBytes 536870912"
if [ -n "$FAKE_FAIL_MATCH" ]; then
    case "$*" in
        *"$FAKE_FAIL_MATCH"*) echo "NCCL WARN fake failure"; exit 3 ;;
    esac
fi
if [ -n "$FAKE_HANG" ]; then
    echo "init done"
    sleep 30 &
    if [ -n "$FAKE_PID_FILE" ]; then
        echo $! > "$FAKE_PID_FILE"
    fi
    wait
fi
echo "# Avg bus bandwidth    : 42.0"
exit 0
"""

HOSTS = ["node01", "node02", "node03", "node04"]


def _make_executable(path: Path, content: str) -> Path:
    path.write_text(content)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def toolchain(tmp_path: Path) -> dict:
    """Fake launcher, library tree, benchmark binaries and hostfile."""
    launcher = _make_executable(tmp_path / "mpirun", FAKE_LAUNCHER)
    nccl_home = tmp_path / "nccl"
    (nccl_home / "lib").mkdir(parents=True)
    tests_dir = tmp_path / "nccl-tests"
    tests_dir.mkdir()
    for name in ("all_reduce_perf", "all_gather_perf", "alltoall_perf"):
        _make_executable(tests_dir / name, "#!/bin/sh\nexit 0\n")
    hostfile = tmp_path / "hostfile"
    hostfile.write_text("# test inventory\n" + "\n".join(HOSTS) + "\n")
    return {
        "launcher": launcher,
        "nccl_home": nccl_home,
        "tests_dir": tests_dir,
        "hostfile": hostfile,
        "output_dir": tmp_path / "out",
        "spawn_log": tmp_path / "spawns.txt",
    }


@pytest.fixture
def make_config(toolchain: dict):
    """Factory for validated configs against the fake toolchain."""

    def _make(axes: dict | None = None, run: dict | None = None, extra_env: dict | None = None,
              **sections) -> HarnessConfig:
        data = {
            "paths": {
                "launcher": str(toolchain["launcher"]),
                "nccl_home": str(toolchain["nccl_home"]),
                "tests_dir": str(toolchain["tests_dir"]),
            },
            "inventory": {"hostfile": str(toolchain["hostfile"]), "gpus_per_node": 8},
            "axes": axes if axes is not None else {
                "collective": ["all_reduce_perf"],
                "algorithm": ["ring", "tree"],
                "nodes": [2, 4],
            },
            "run": {
                "output_dir": str(toolchain["output_dir"]),
                "prefix": "test",
                "skip_finished": False,
                "dry_run": True,
                "liveness_timeout": 5,
                "kill_grace": 2,
                **(run or {}),
            },
            **sections,
        }
        environ = {
            "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
            "FAKE_SPAWN_LOG": str(toolchain["spawn_log"]),
            **(extra_env or {}),
        }
        config = build_config(data, environ)
        config.run.verbose = False
        config.validate()
        return config

    return _make


@pytest.fixture
def process_gone():
    """Wait (bounded) until a pid no longer names a live process."""

    def _alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        # Killed orphans may linger as zombies until init reaps them
        try:
            with open(f"/proc/{pid}/stat") as f:
                return f.read().rsplit(")", 1)[1].split()[0] != "Z"
        except (OSError, IndexError):
            return False

    def _gone(pid: int, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while _alive(pid):
            if time.monotonic() > deadline:
                return False
            time.sleep(0.05)
        return True

    return _gone


@pytest.fixture
def spawn_count(toolchain: dict):
    """Number of times the fake launcher has been started."""

    def _count() -> int:
        log = toolchain["spawn_log"]
        if not log.exists():
            return 0
        return len([line for line in log.read_text().splitlines() if line.strip()])

    return _count
