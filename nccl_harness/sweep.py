"""
Sweep driver

Walks the sweep plan strictly one configuration at a time: each attempt
claims the whole requested node set, so nothing ever runs concurrently.
"""

import signal
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from colorama import Fore, Style
from tabulate import tabulate

from .axes import AxisRegistry, build_registry
from .cluster import ClusterResolver
from .config import HarnessConfig
from .errors import SweepInterrupted
from .executor import LaunchOrchestrator, format_duration
from .grid import ExperimentConfig, GridGenerator, SweepPlan
from .ledger import MODE_DRY_RUN, MODE_LIVE, RunLedger
from .models import Outcome, RunRecord, RunStatus
from .run_logger import RunArtifact, RunLogger


SUMMARY_STATUSES = (
    RunStatus.COMPLETED,
    RunStatus.FAILED,
    RunStatus.TIMED_OUT,
    RunStatus.SKIPPED,
)


@dataclass
class AttemptResult:
    """What happened to one configuration in this invocation."""
    config: ExperimentConfig
    status: RunStatus
    artifact_path: Optional[Path] = None
    outcome: Optional[Outcome] = None


@dataclass
class SweepResult:
    """Result of one sweep invocation."""
    session: str
    planned: int
    attempts: List[AttemptResult] = field(default_factory=list)
    interrupted: bool = False
    duration_sec: float = 0.0

    def count(self, status: RunStatus) -> int:
        return sum(1 for attempt in self.attempts if attempt.status == status)

    @property
    def counts(self) -> Dict[str, int]:
        return {status.value: self.count(status) for status in SUMMARY_STATUSES}

    @property
    def artifacts(self) -> List[Path]:
        return [a.artifact_path for a in self.attempts if a.artifact_path is not None]

    @property
    def executed(self) -> int:
        return sum(1 for a in self.attempts if a.status != RunStatus.SKIPPED)


@contextmanager
def sigterm_as_interrupt():
    """Turn SIGTERM into SweepInterrupted while a sweep is running."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame):
        raise SweepInterrupted(f"Received signal {signum}")

    previous = signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


class SweepRunner:
    """Plans and drives one sweep invocation."""

    def __init__(self, config: HarnessConfig, orchestrator: Optional[LaunchOrchestrator] = None):
        self.config = config
        self.verbose = config.run.verbose
        self.mode = MODE_DRY_RUN if config.run.dry_run else MODE_LIVE
        self.orchestrator = orchestrator or LaunchOrchestrator(config, verbose=self.verbose)
        self.resolver = ClusterResolver(config.inventory.gpus_per_node)
        self.registry: Optional[AxisRegistry] = None
        self.plan: Optional[SweepPlan] = None
        self._commands: Dict[str, List[str]] = {}

    def _log(self, message: str) -> None:
        if self.verbose:
            print(message)

    def prepare(self) -> SweepPlan:
        """Build and validate the plan. Nothing external is touched yet.

        Raises:
            ValidationError: on empty axes, short inventories or bad commands
        """
        self.registry = build_registry(self.config)
        self.plan = GridGenerator(self.registry).generate()
        self.resolver.validate(self.plan.shapes)

        self._commands = {}
        for experiment in self.plan:
            hosts = self.resolver.resolve(experiment.shape)
            cmd, _ = self.orchestrator.build_command(experiment, hosts)
            self._commands[experiment.identity] = cmd
        return self.plan

    def print_plan(self) -> None:
        """Print the planned test matrix."""
        rows = []
        for axis in self.registry.axes:
            rows.append([axis.name, len(axis), ', '.join(str(v) for v in axis.values)])
        self._log(f"{Fore.GREEN}Sweep Configuration:{Style.RESET_ALL}")
        self._log(tabulate(rows, headers=['Axis', 'Values', 'Candidates'], tablefmt='simple'))
        self._log(f"  Mode: {'DRY RUN' if self.config.run.dry_run else 'live'}")
        self._log(f"  Skip finished: {self.config.run.skip_finished}")
        self._log(f"  Liveness timeout: {format_duration(self.config.run.liveness_timeout)}")
        if self.plan.rejected:
            self._log(f"  Rejected combinations: {Fore.YELLOW}{len(self.plan.rejected)}{Style.RESET_ALL}")
        self._log(f"  Total tests: {Fore.YELLOW}{len(self.plan)}{Style.RESET_ALL}")
        self._log("")

    def run(self) -> SweepResult:
        """Run every configuration of the plan that still needs an attempt."""
        if self.plan is None:
            self.prepare()

        run_config = self.config.run
        run_config.output_dir.mkdir(parents=True, exist_ok=True)
        run_logger = RunLogger(run_config.log_dir, run_config.prefix)

        with RunLedger(run_config.ledger_path, skip_finished=run_config.skip_finished,
                       mode=self.mode, verbose=self.verbose) as ledger:
            recovered = ledger.reconcile(run_logger.artifacts())
            if recovered:
                self._log(f"Recovered {recovered} record(s) from existing artifacts")
            for record in ledger.abandoned():
                self._log(f"{Fore.YELLOW}Abandoned attempt from session {record.session}: "
                          f"{record.identity} (never finished, will not count as done){Style.RESET_ALL}")

            result = SweepResult(session=ledger.session, planned=len(self.plan))
            if len(self.plan) == 0:
                self._log(f"{Fore.YELLOW}Sweep plan is empty: every combination was rejected{Style.RESET_ALL}")
                return result

            start_time = time.time()
            with sigterm_as_interrupt():
                try:
                    self._run_plan(ledger, run_logger, result, start_time)
                except (KeyboardInterrupt, SweepInterrupted):
                    result.interrupted = True
                    self._log(f"\n\n{Fore.YELLOW}Sweep interrupted{Style.RESET_ALL}")
            result.duration_sec = time.time() - start_time
            return result

    def _run_plan(self, ledger: RunLedger, run_logger: RunLogger, result: SweepResult,
                  start_time: float) -> None:
        total = len(self.plan)
        executed = 0
        for index, experiment in enumerate(self.plan, start=1):
            if not ledger.should_run(experiment.identity):
                result.attempts.append(AttemptResult(experiment, RunStatus.SKIPPED))
                self._log(f"{Fore.CYAN}[{index}/{total}]{Style.RESET_ALL} {experiment.description} "
                          f"{Fore.YELLOW}(already completed, skipping){Style.RESET_ALL}")
                continue

            elapsed = time.time() - start_time
            eta = ""
            if executed > 0:
                remaining = elapsed / executed * (total - index + 1)
                eta = f"ETA: {format_duration(remaining)}"
            self._log(f"\n{Fore.CYAN}[{index}/{total}] {experiment.description} {eta}{Style.RESET_ALL}")

            self._attempt(ledger, run_logger, experiment, result)
            executed += 1

    def _attempt(self, ledger: RunLedger, run_logger: RunLogger,
                 experiment: ExperimentConfig, result: SweepResult) -> None:
        hosts = self.resolver.resolve(experiment.shape)
        cmd = self._commands.get(experiment.identity)
        if cmd is None:
            cmd, _ = self.orchestrator.build_command(experiment, hosts)
        command = self.orchestrator.render(cmd)

        with run_logger.open(experiment) as artifact:
            artifact.write_header(hosts.hosts, command, self.mode)
            record = ledger.begin(experiment, artifact.path, hosts.hosts, command)
            started = time.monotonic()
            outcome = None
            try:
                outcome = self.orchestrator.execute(experiment, hosts, artifact, cmd)
                self._finalize(ledger, record, artifact, outcome, hosts.hosts)
            except (KeyboardInterrupt, SweepInterrupted) as e:
                # The job may have ended before the interrupt; keep whatever was sealed
                if not artifact.sealed:
                    outcome = Outcome.failure('interrupted', duration_sec=time.monotonic() - started,
                                              message=str(e) or 'KeyboardInterrupt')
                    artifact.seal(outcome, hosts.hosts, self.mode)
                ledger.finish(record, outcome)
                result.attempts.append(AttemptResult(experiment, outcome.status, artifact.path, outcome))
                raise

        result.attempts.append(AttemptResult(experiment, outcome.status, artifact.path, outcome))

    def _finalize(self, ledger: RunLedger, record: RunRecord, artifact: RunArtifact,
                  outcome: Outcome, hosts) -> None:
        # Artifact first: it is what a later invocation trusts
        artifact.seal(outcome, hosts, self.mode)
        ledger.finish(record, outcome)

    def print_summary(self, result: SweepResult) -> None:
        """Print per-status counts and artifact paths."""
        title = 'Sweep Interrupted' if result.interrupted else 'Sweep Complete'
        print(f"\n{Fore.CYAN}{'='*70}")
        print(f"{Style.BRIGHT}{title}{Style.RESET_ALL}")
        print(f"{Fore.CYAN}{'='*70}{Style.RESET_ALL}\n")

        colors = {
            RunStatus.COMPLETED: Fore.GREEN,
            RunStatus.FAILED: Fore.RED,
            RunStatus.TIMED_OUT: Fore.RED,
            RunStatus.SKIPPED: Fore.YELLOW,
        }
        rows = [[f"{colors[s]}{s.value}{Style.RESET_ALL}", result.count(s)] for s in SUMMARY_STATUSES]
        rows.append([RunStatus.PLANNED.value, result.planned])
        print(tabulate(rows, headers=['Status', 'Count'], tablefmt='simple'))
        print()
        print(f"  Total time: {format_duration(result.duration_sec)}")
        print(f"  Session: {result.session}")
        print(f"  Ledger: {self.config.run.ledger_path}")

        if result.artifacts:
            print("\n  Artifacts:")
            for attempt in result.attempts:
                if attempt.artifact_path is not None:
                    print(f"    [{attempt.status.value:>9}] {attempt.artifact_path}")

    def export_csv(self, result: SweepResult, output_path: Path) -> int:
        with RunLedger(self.config.run.ledger_path, mode=self.mode, verbose=self.verbose) as ledger:
            return ledger.export_to_csv(output_path, session=result.session)
