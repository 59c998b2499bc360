"""
Launch Orchestrator

Builds the mpirun command for one configuration and either runs it under
supervision (live mode) or only renders it (dry-run mode).

Multi-node collective jobs have a habit of hanging without crashing, so a
live job is watched for output: if it stays silent longer than the liveness
timeout, its whole process group is torn down and the attempt is recorded
as TimedOut.
"""

import os
import queue
import shlex
import signal
import subprocess
import threading
import time
from typing import Dict, List, Optional, Tuple

from colorama import Fore, Style

from .axes import topology_file_name
from .cluster import HostSet
from .config import HarnessConfig, collective_binary
from .errors import ConfigValidationError, LaunchError
from .grid import ExperimentConfig
from .models import Outcome
from .run_logger import RunArtifact


# Algorithm and protocol mappings for NCCL_ALGO / NCCL_PROTO
ALGO_MAP = {
    'RING': 'Ring',
    'TREE': 'Tree',
    'DIRECT': 'Direct',
    'COLLNET': 'CollNet',
    'NVLS': 'NVLS',
}

PROTO_MAP = {
    'LL': 'LL',
    'LL128': 'LL128',
    'SIMPLE': 'Simple',
}

_EOF = object()
POLL_INTERVAL = 0.2


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        mins = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{mins}m {secs}s"
    else:
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        return f"{hours}h {mins}m"


def terminate_process_group(process: subprocess.Popen, grace: float) -> None:
    """Terminate a process and its entire process group.

    Sends SIGTERM to the group, then SIGKILL if it is still alive after
    ``grace`` seconds.
    """
    if process.poll() is not None:
        return
    try:
        # The job runs in its own session, so its pid is the pgid
        os.killpg(process.pid, signal.SIGTERM)
        process.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        process.wait()
    except ProcessLookupError:
        process.wait()


def _pump(stream, lines: queue.Queue) -> None:
    """Reader thread: forward every line of output, then an EOF sentinel."""
    try:
        for line in iter(stream.readline, ''):
            lines.put(line)
    except (OSError, ValueError):
        pass
    finally:
        lines.put(_EOF)


class LaunchOrchestrator:
    """Executes one external distributed job per configuration."""

    def __init__(self, config: HarnessConfig, verbose: bool = True):
        """Initialize the orchestrator.

        Args:
            config: Validated harness configuration
            verbose: Whether to echo job output to the console
        """
        self.config = config
        self.verbose = verbose
        self.spawned = 0

    @property
    def dry_run(self) -> bool:
        return self.config.run.dry_run

    def topology_file(self, experiment: ExperimentConfig, hosts: HostSet):
        """Topology descriptor (MSCCL algorithm XML) for a configuration, if any."""
        topology_dir = self.config.paths.topology_dir
        if topology_dir is None or experiment.get('algorithm') is None:
            return None
        return topology_dir / topology_file_name(
            collective=experiment['collective'],
            algorithm=experiment['algorithm'],
            num_nodes=hosts.num_nodes,
            num_gpus=hosts.total_gpus,
            channels=experiment.get('channels', 1),
            chunks=experiment.get('chunks', 1),
            gpu_as_node=self.config.inventory.gpu_as_node,
        )

    def build_env_vars(self, experiment: ExperimentConfig, hosts: HostSet) -> Dict[str, str]:
        """Environment variables forwarded to every rank with ``-x``."""
        env_vars = {}
        library_dirs = self.config.paths.library_dirs()
        if library_dirs:
            env_vars['LD_LIBRARY_PATH'] = ':'.join(str(d) for d in library_dirs)
        env_vars['NCCL_DEBUG'] = self.config.nccl_debug

        topology = self.topology_file(experiment, hosts)
        if topology is not None:
            if not topology.exists():
                raise ConfigValidationError(f"Topology file not found: {topology}")
            env_vars['MSCCL_XML_FILES'] = str(topology)
        elif experiment.get('algorithm') is not None:
            algo = str(experiment['algorithm'])
            env_vars['NCCL_ALGO'] = ALGO_MAP.get(algo.upper(), algo)

        if experiment.get('proto') is not None:
            proto = str(experiment['proto'])
            env_vars['NCCL_PROTO'] = PROTO_MAP.get(proto.upper(), proto)

        # Without a topology file the channel count is pinned through NCCL itself
        if experiment.get('channels') is not None and topology is None:
            env_vars['NCCL_MIN_NCHANNELS'] = str(experiment['channels'])
            env_vars['NCCL_MAX_NCHANNELS'] = str(experiment['channels'])

        env_vars.update(self.config.env_vars)
        return env_vars

    def build_command(self, experiment: ExperimentConfig, hosts: HostSet) -> Tuple[List[str], Dict[str, str]]:
        """Build the mpirun command with all forwarded environment variables.

        Returns:
            Tuple of (command list, forwarded environment dict)

        Raises:
            ConfigValidationError: if a required path is missing
        """
        paths = self.config.paths
        if paths.launcher is None:
            raise ConfigValidationError("paths.launcher is required but not set")
        if paths.tests_dir is None:
            raise ConfigValidationError("paths.tests_dir is required but not set")

        test_executable = paths.tests_dir / collective_binary(experiment['collective'])
        if not test_executable.exists():
            raise ConfigValidationError(f"Benchmark binary not found at: {test_executable}")

        mpi_config = self.config.mpi
        test_defaults = self.config.test_defaults
        ranks_per_node = self.config.inventory.ranks_per_node
        env_vars = self.build_env_vars(experiment, hosts)

        cmd = [
            str(paths.launcher),
            '--np', str(hosts.num_nodes * ranks_per_node),
            '-H', hosts.host_string(ranks_per_node),
            '--map-by', f"ppr:{ranks_per_node}:node",
            '--bind-to', str(mpi_config.get('bind_to', 'none')),
        ]
        if mpi_config.get('allow_run_as_root'):
            cmd.append('--allow-run-as-root')

        for key, value in (mpi_config.get('mca') or {}).items():
            cmd.extend(['--mca', str(key), str(value)])

        for key, value in env_vars.items():
            cmd.extend(['-x', f'{key}={value}'])

        cmd.extend(str(arg) for arg in (mpi_config.get('extra_args') or []))

        cmd.append(str(test_executable))
        cmd.extend(['-b', str(test_defaults.get('min_bytes'))])
        cmd.extend(['-e', str(experiment.get('max_bytes', test_defaults.get('max_bytes')))])
        # Use -i (step bytes) if step_bytes is set, otherwise use -f (step factor)
        if test_defaults.get('step_bytes'):
            cmd.extend(['-i', str(test_defaults['step_bytes'])])
        else:
            cmd.extend(['-f', str(test_defaults.get('step_factor'))])
        cmd.extend(['-g', str(test_defaults.get('gpus_per_rank'))])
        cmd.extend(['-t', str(test_defaults.get('threads'))])
        if experiment.get('op') is not None:
            cmd.extend(['-o', str(experiment['op'])])
        if experiment.get('dtype') is not None:
            cmd.extend(['-d', str(experiment['dtype'])])
        cmd.extend(['-n', str(test_defaults.get('iterations'))])
        cmd.extend(['-w', str(test_defaults.get('warmup_iters'))])
        cmd.extend(['-c', str(test_defaults.get('check_iters'))])

        return cmd, env_vars

    @staticmethod
    def render(cmd: List[str]) -> str:
        return ' '.join(shlex.quote(c) for c in cmd)

    def execute(self, experiment: ExperimentConfig, hosts: HostSet, artifact: RunArtifact,
                cmd: Optional[List[str]] = None) -> Outcome:
        """Run (or simulate) one configuration.

        Args:
            experiment: Configuration to run
            hosts: Resolved host set
            artifact: Open artifact receiving the job output
            cmd: Pre-built command; built here if not given

        Returns:
            Classified outcome
        """
        if cmd is None:
            cmd, _ = self.build_command(experiment, hosts)

        if self.dry_run:
            artifact.write("DRY RUN - command rendered, not executed:")
            artifact.write(self.render(cmd))
            return Outcome.success(exit_code=0, classification='dry_run')

        return self._supervise(cmd, artifact)

    def _spawn(self, cmd: List[str]) -> subprocess.Popen:
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors='replace',
                bufsize=1,
                env=dict(self.config.environ),
                start_new_session=True,
            )
        except OSError as e:
            raise LaunchError(f"Failed to start {cmd[0]}: {e}")
        self.spawned += 1
        return process

    def _echo(self, line: str) -> None:
        if self.verbose:
            print(f"  {Style.DIM}{line.rstrip()}{Style.RESET_ALL}")

    def _supervise(self, cmd: List[str], artifact: RunArtifact) -> Outcome:
        """Stream output into the artifact and enforce the liveness timeout."""
        run_config = self.config.run
        start_time = time.monotonic()

        try:
            process = self._spawn(cmd)
        except LaunchError as e:
            artifact.write(f"[harness] {e}")
            return Outcome.failure('launch_error', duration_sec=time.monotonic() - start_time,
                                   message=str(e))

        lines: queue.Queue = queue.Queue()
        reader = threading.Thread(target=_pump, args=(process.stdout, lines), daemon=True)
        reader.start()

        last_output = time.monotonic()
        timeout_kind = None
        output_closed = False
        try:
            while True:
                if output_closed:
                    # A job can close its output and keep running, so poll until it exits
                    if process.poll() is not None:
                        break
                    time.sleep(POLL_INTERVAL)
                    item = None
                else:
                    try:
                        item = lines.get(timeout=POLL_INTERVAL)
                    except queue.Empty:
                        item = None
                    if item is _EOF:
                        output_closed = True
                        continue

                now = time.monotonic()
                if item is not None:
                    last_output = now
                    artifact.write(item)
                    self._echo(item)
                elif now - last_output > run_config.liveness_timeout:
                    timeout_kind = 'liveness_timeout'
                    break
                if run_config.max_runtime and now - start_time > run_config.max_runtime:
                    timeout_kind = 'max_runtime'
                    break
        except BaseException:
            # Interrupted: take the whole job down before handing control back
            terminate_process_group(process, run_config.kill_grace)
            reader.join(timeout=run_config.kill_grace)
            artifact.write("[harness] interrupted, process group terminated")
            raise

        if timeout_kind:
            silent_for = time.monotonic() - last_output
            terminate_process_group(process, run_config.kill_grace)
            reader.join(timeout=run_config.kill_grace)
            self._drain(lines, artifact)
            duration = time.monotonic() - start_time
            if timeout_kind == 'liveness_timeout':
                message = f"No output for {silent_for:.1f}s (limit {run_config.liveness_timeout}s)"
            else:
                message = f"Exceeded max runtime of {run_config.max_runtime}s"
            artifact.write(f"[harness] {message}, process group terminated")
            if self.verbose:
                print(f"{Fore.RED}✗ Timeout: {message}{Style.RESET_ALL}")
            return Outcome.timed_out(duration, message=message, classification=timeout_kind,
                                     exit_code=process.returncode)

        return_code = process.returncode
        reader.join()
        duration = time.monotonic() - start_time

        if return_code == 0:
            if self.verbose:
                print(f"{Fore.GREEN}✓ Completed in {format_duration(duration)}{Style.RESET_ALL}")
            return Outcome.success(exit_code=0, duration_sec=duration)

        if self.verbose:
            print(f"{Fore.RED}✗ Failed with code {return_code} in {format_duration(duration)}{Style.RESET_ALL}")
        return Outcome.failure('exit_nonzero', exit_code=return_code, duration_sec=duration,
                               message=f"Exited with code {return_code}")

    @staticmethod
    def _drain(lines: queue.Queue, artifact: RunArtifact) -> None:
        """Write whatever the reader picked up before the job was killed."""
        while True:
            try:
                item = lines.get_nowait()
            except queue.Empty:
                return
            if item is not _EOF:
                artifact.write(item)
