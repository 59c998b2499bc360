from __future__ import annotations

import time
from pathlib import Path

import pytest

from nccl_harness.axes import topology_file_name
from nccl_harness.cluster import ClusterShape, HostSet
from nccl_harness.errors import ConfigValidationError
from nccl_harness.executor import LaunchOrchestrator, format_duration
from nccl_harness.grid import ExperimentConfig
from nccl_harness.models import RunStatus
from nccl_harness.run_logger import RunLogger

HOSTS = HostSet(("node01", "node02"), gpus_per_host=8)


def _experiment(**values) -> ExperimentConfig:
    base = {
        "collective": "all_reduce_perf",
        "algorithm": "tree",
        "nodes": ClusterShape(2, Path("/tmp/hostfile")),
    }
    base.update(values)
    return ExperimentConfig(base)


def _execute(orchestrator: LaunchOrchestrator, experiment: ExperimentConfig, log_dir: Path):
    with RunLogger(log_dir, "exec").open(experiment) as artifact:
        outcome = orchestrator.execute(experiment, HOSTS, artifact)
    return outcome, artifact.path.read_text()


def test_command_line_contents(make_config, toolchain: dict) -> None:
    config = make_config(mpi={"mca": {"btl": "^openib"}, "allow_run_as_root": True},
                         env_vars={"FI_PROVIDER": "efa"})
    orchestrator = LaunchOrchestrator(config, verbose=False)

    cmd, env_vars = orchestrator.build_command(
        _experiment(proto="simple", channels=4, op="sum", dtype="float"), HOSTS)

    assert cmd[0] == str(toolchain["launcher"])
    assert cmd[cmd.index("--np") + 1] == "16"
    assert cmd[cmd.index("-H") + 1] == "node01:8,node02:8"
    assert "--allow-run-as-root" in cmd
    assert cmd[cmd.index("--mca") + 1:cmd.index("--mca") + 3] == ["btl", "^openib"]
    assert "NCCL_ALGO=Tree" in cmd
    assert "NCCL_PROTO=Simple" in cmd
    assert "NCCL_MAX_NCHANNELS=4" in cmd
    assert "FI_PROVIDER=efa" in cmd
    assert env_vars["LD_LIBRARY_PATH"] == str(toolchain["nccl_home"] / "lib")
    assert str(toolchain["tests_dir"] / "all_reduce_perf") in cmd
    assert cmd[cmd.index("-o") + 1] == "sum"
    assert cmd[cmd.index("-d") + 1] == "float"
    assert cmd[cmd.index("-e") + 1] == "512M"


def test_procs_per_node_sets_host_slots(make_config, toolchain: dict) -> None:
    config = make_config(inventory={"hostfile": str(toolchain["hostfile"]),
                                    "gpus_per_node": 8, "procs_per_node": 4})

    cmd, _ = LaunchOrchestrator(config, verbose=False).build_command(_experiment(), HOSTS)

    assert cmd[cmd.index("--np") + 1] == "8"
    assert cmd[cmd.index("-H") + 1] == "node01:4,node02:4"
    assert cmd[cmd.index("--map-by") + 1] == "ppr:4:node"


def test_max_bytes_axis_overrides_default(make_config) -> None:
    orchestrator = LaunchOrchestrator(make_config(), verbose=False)
    cmd, _ = orchestrator.build_command(_experiment(max_bytes="8G"), HOSTS)
    assert cmd[cmd.index("-e") + 1] == "8G"


def test_topology_file_replaces_nccl_algo(make_config, tmp_path: Path) -> None:
    topology_dir = tmp_path / "xml"
    topology_dir.mkdir()
    name = topology_file_name("all_reduce_perf", "tree", 2, 16, 1, 1, False)
    (topology_dir / name).write_text("<algo/>")
    config = make_config()
    config.paths.topology_dir = topology_dir

    env_vars = LaunchOrchestrator(config, verbose=False).build_env_vars(_experiment(), HOSTS)

    assert env_vars["MSCCL_XML_FILES"] == str(topology_dir / name)
    assert "NCCL_ALGO" not in env_vars


def test_missing_topology_file_is_a_validation_error(make_config, tmp_path: Path) -> None:
    config = make_config()
    config.paths.topology_dir = tmp_path

    with pytest.raises(ConfigValidationError, match="Topology"):
        LaunchOrchestrator(config, verbose=False).build_env_vars(_experiment(), HOSTS)


def test_dry_run_renders_without_spawning(make_config, spawn_count, tmp_path: Path) -> None:
    orchestrator = LaunchOrchestrator(make_config(), verbose=False)

    outcome, text = _execute(orchestrator, _experiment(), tmp_path / "logs")

    assert outcome.status == RunStatus.COMPLETED
    assert outcome.classification == "dry_run"
    assert "DRY RUN" in text
    assert "NCCL_ALGO=Tree" in text
    assert orchestrator.spawned == 0
    assert spawn_count() == 0


def test_live_success_streams_output(make_config, spawn_count, tmp_path: Path) -> None:
    orchestrator = LaunchOrchestrator(make_config(run={"dry_run": False}), verbose=False)

    outcome, text = _execute(orchestrator, _experiment(), tmp_path / "logs")

    assert outcome.status == RunStatus.COMPLETED
    assert outcome.exit_code == 0
    assert "Avg bus bandwidth" in text
    assert spawn_count() == 1


def test_live_nonzero_exit_is_failed(make_config, tmp_path: Path) -> None:
    config = make_config(run={"dry_run": False}, extra_env={"FAKE_FAIL_MATCH": "NCCL_ALGO=Tree"})
    orchestrator = LaunchOrchestrator(config, verbose=False)

    outcome, text = _execute(orchestrator, _experiment(), tmp_path / "logs")

    assert outcome.status == RunStatus.FAILED
    assert outcome.classification == "exit_nonzero"
    assert outcome.exit_code == 3
    assert "fake failure" in text


def test_silent_job_is_killed_after_liveness_timeout(make_config, process_gone,
                                                    tmp_path: Path) -> None:
    pid_file = tmp_path / "rank.pid"
    config = make_config(run={"dry_run": False, "liveness_timeout": 0.5, "kill_grace": 1},
                         extra_env={"FAKE_HANG": "1", "FAKE_PID_FILE": str(pid_file)})
    orchestrator = LaunchOrchestrator(config, verbose=False)

    started = time.monotonic()
    outcome, text = _execute(orchestrator, _experiment(), tmp_path / "logs")
    elapsed = time.monotonic() - started

    assert outcome.status == RunStatus.TIMED_OUT
    assert outcome.classification == "liveness_timeout"
    assert "init done" in text
    assert "process group terminated" in text
    assert elapsed < 10
    assert process_gone(int(pid_file.read_text()))


def test_job_that_closes_its_output_is_still_timed_out(make_config, tmp_path: Path) -> None:
    launcher = tmp_path / "detaching-mpirun"
    launcher.write_text("#!/bin/sh\necho hi\nexec >&- 2>&-\nsleep 20\n")
    launcher.chmod(0o755)
    config = make_config(run={"dry_run": False, "liveness_timeout": 0.5, "kill_grace": 1})
    config.paths.launcher = launcher
    orchestrator = LaunchOrchestrator(config, verbose=False)

    started = time.monotonic()
    outcome, text = _execute(orchestrator, _experiment(), tmp_path / "logs")
    elapsed = time.monotonic() - started

    assert outcome.status == RunStatus.TIMED_OUT
    assert outcome.classification == "liveness_timeout"
    assert "hi\n" in text
    assert elapsed < 10


def test_max_runtime_applies_after_output_closes(make_config, tmp_path: Path) -> None:
    launcher = tmp_path / "chatty-then-quiet"
    launcher.write_text("#!/bin/sh\necho hi\nexec >&- 2>&-\nsleep 20\n")
    launcher.chmod(0o755)
    config = make_config(run={"dry_run": False, "liveness_timeout": 60, "max_runtime": 0.5,
                              "kill_grace": 1})
    config.paths.launcher = launcher

    outcome, _ = _execute(LaunchOrchestrator(config, verbose=False), _experiment(), tmp_path / "logs")

    assert outcome.status == RunStatus.TIMED_OUT
    assert outcome.classification == "max_runtime"


def test_max_runtime_bounds_a_job(make_config, tmp_path: Path) -> None:
    config = make_config(run={"dry_run": False, "liveness_timeout": 60, "max_runtime": 0.5,
                              "kill_grace": 1},
                         extra_env={"FAKE_HANG": "1"})
    orchestrator = LaunchOrchestrator(config, verbose=False)

    outcome, _ = _execute(orchestrator, _experiment(), tmp_path / "logs")

    assert outcome.status == RunStatus.TIMED_OUT
    assert outcome.classification == "max_runtime"


def test_unlaunchable_command_is_a_launch_error(make_config, tmp_path: Path) -> None:
    config = make_config(run={"dry_run": False})
    config.paths.launcher = tmp_path / "no-such-mpirun"
    orchestrator = LaunchOrchestrator(config, verbose=False)

    outcome, text = _execute(orchestrator, _experiment(), tmp_path / "logs")

    assert outcome.status == RunStatus.FAILED
    assert outcome.classification == "launch_error"
    assert "[harness]" in text
    assert orchestrator.spawned == 0


def test_format_duration() -> None:
    assert format_duration(12.34) == "12.3s"
    assert format_duration(125) == "2m 5s"
    assert format_duration(7260) == "2h 1m"
