"""
Run Logger

One append-only log artifact per attempt. The file carries a short header,
the job's full combined output, and, once the attempt is over, a trailing
machine-readable outcome marker. An artifact without a marker belongs to an
attempt that never finished (the harness was killed) and is never mistaken
for a completed run.
"""

import json
import re
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Sequence

from .errors import LedgerError
from .grid import ExperimentConfig
from .models import Outcome


MARKER_PREFIX = '#@@ harness-outcome '
TAIL_BYTES = 64 * 1024


class RunArtifact:
    """Writable sink for one attempt's output."""

    def __init__(self, path: Path, handle, config: ExperimentConfig):
        self.path = path
        self.config = config
        self._handle = handle
        self.sealed = False

    @property
    def closed(self) -> bool:
        return self._handle.closed

    def write(self, line: str) -> None:
        """Append one line of output and flush it to disk."""
        if not line.endswith('\n'):
            line += '\n'
        self._handle.write(line)
        self._handle.flush()

    def write_header(self, hosts: Sequence[str], command: str, mode: str) -> None:
        self.write(f"# identity: {self.config.identity}")
        self.write(f"# config: {json.dumps({k: str(v) for k, v in self.config.values.items()})}")
        self.write(f"# hosts: {','.join(hosts)}")
        self.write(f"# mode: {mode}")
        self.write(f"# command: {command}")
        self.write(f"# started: {datetime.now().isoformat()}")

    def seal(self, outcome: Outcome, hosts: Sequence[str], mode: str) -> Dict[str, Any]:
        """Append the outcome marker. Sealing twice is an error."""
        if self.sealed:
            raise LedgerError(f"Artifact already sealed: {self.path}")
        marker = {
            'identity': self.config.identity,
            'status': outcome.status.value,
            'classification': outcome.classification,
            'exit_code': outcome.exit_code,
            'duration_sec': round(outcome.duration_sec, 3),
            'num_nodes': len(hosts),
            'hosts': list(hosts),
            'mode': mode,
            'end_time': datetime.now().isoformat(),
        }
        if outcome.message:
            marker['message'] = outcome.message
        self.write(MARKER_PREFIX + json.dumps(marker, sort_keys=True))
        self.sealed = True
        return marker

    def close(self) -> None:
        if not self._handle.closed:
            self._handle.flush()
            self._handle.close()


class RunLogger:
    """Creates uniquely named artifacts under one directory."""

    def __init__(self, log_dir: Path, prefix: str):
        self.log_dir = Path(log_dir)
        self.prefix = prefix
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def artifact_name(self, config: ExperimentConfig, timestamp: str, attempt: int = 0) -> str:
        suffix = f"-{attempt}" if attempt else ""
        return f"{self.prefix}-{config.digest}-{config.num_nodes}node.{timestamp}{suffix}.log"

    def _create(self, config: ExperimentConfig):
        timestamp = datetime.now().strftime('%Y%m%dT%H%M%S.%f')
        attempt = 0
        while True:
            path = self.log_dir / self.artifact_name(config, timestamp, attempt)
            try:
                return path, open(path, 'x', encoding='utf-8')
            except FileExistsError:
                attempt += 1

    @contextmanager
    def open(self, config: ExperimentConfig) -> Iterator[RunArtifact]:
        """Open a fresh artifact; it is closed on every exit path."""
        path, handle = self._create(config)
        artifact = RunArtifact(path, handle, config)
        try:
            yield artifact
        finally:
            artifact.close()

    def artifacts(self) -> Iterator[Path]:
        """Artifacts written under this prefix (not under prefixes that extend it)."""
        pattern = re.compile(rf"{re.escape(self.prefix)}-[0-9a-f]{{12}}-\d+node\..+\.log")
        paths = self.log_dir.glob(f"{self.prefix}-*.log")
        return iter(sorted(p for p in paths if pattern.fullmatch(p.name)))


def read_marker(path: Path) -> Optional[Dict[str, Any]]:
    """Read the trailing outcome marker of an artifact.

    Returns:
        The marker dict, or None if the artifact was never sealed

    Raises:
        LedgerError: if the artifact is unreadable or the marker is malformed
    """
    try:
        with open(path, 'rb') as f:
            f.seek(0, 2)
            size = f.tell()
            f.seek(max(0, size - TAIL_BYTES))
            tail = f.read().decode('utf-8', errors='replace')
    except OSError as e:
        raise LedgerError(f"Could not read artifact {path}: {e}")

    lines = [line for line in tail.splitlines() if line.strip()]
    if not lines or not lines[-1].startswith(MARKER_PREFIX):
        return None
    try:
        marker = json.loads(lines[-1][len(MARKER_PREFIX):])
    except json.JSONDecodeError as e:
        raise LedgerError(f"Malformed outcome marker in {path}: {e}")
    if not isinstance(marker, dict) or 'identity' not in marker or 'status' not in marker:
        raise LedgerError(f"Incomplete outcome marker in {path}")
    return marker
