"""
Run Ledger

SQLite record of every attempt, one row per attempt. Rows are only ever
appended; ``finish`` fills in the terminal fields of the attempt's own row
and nothing else. Whether a configuration is really done is decided by the
outcome marker of its artifact, not by the row alone, so a database that
outlived a crashed harness can't cause a false skip.
"""

import json
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from colorama import Fore, Style

from .errors import DuplicateRunError, InvalidTransitionError, LedgerError
from .grid import ExperimentConfig
from .models import Outcome, RunRecord, RunStatus
from .run_logger import read_marker


MODE_LIVE = 'live'
MODE_DRY_RUN = 'dry_run'


def new_session_id() -> str:
    return f"{datetime.now().strftime('%Y%m%dT%H%M%S')}-{uuid.uuid4().hex[:6]}"


class RunLedger:
    """Durable, append-only store of run records."""

    def __init__(self, db_path: Path, skip_finished: bool = True, mode: str = MODE_LIVE,
                 session: Optional[str] = None, verbose: bool = True):
        """Open (or create) the ledger.

        Args:
            db_path: Path to SQLite database file
            skip_finished: Whether prior Completed attempts make a config skippable
            mode: 'live' or 'dry_run'; completions only count within the same mode
            session: Identifier of this invocation
            verbose: Whether to print warnings
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.skip_finished = skip_finished
        self.mode = mode
        self.session = session or new_session_id()
        self.verbose = verbose
        self.conn = None
        self.quarantined: Optional[Path] = None
        try:
            self._open()
        except sqlite3.DatabaseError as e:
            if not self.db_path.is_file():
                raise LedgerError(f"Could not open ledger {self.db_path}: {e}")
            # Unreadable database: set it aside, start empty, reconcile refills it
            self._quarantine(e)
            try:
                self._open()
            except sqlite3.Error as e:
                raise LedgerError(f"Could not open ledger {self.db_path}: {e}")

    def _open(self):
        try:
            self._connect()
            self._create_tables()
        except sqlite3.Error:
            self.close()
            raise

    def _quarantine(self, error: Exception) -> None:
        target = self.db_path.with_name(f"{self.db_path.name}.corrupt-{self.session}")
        try:
            self.db_path.rename(target)
        except OSError as e:
            raise LedgerError(f"Could not open ledger {self.db_path} ({error}) or move it aside: {e}")
        self.quarantined = target
        self._warn(f"Ledger {self.db_path} is unreadable ({error}); moved to {target.name}, "
                   f"rebuilding from artifacts")

    def _connect(self):
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row

    def _create_tables(self):
        cursor = self.conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session TEXT NOT NULL,
                identity TEXT NOT NULL,
                config_json TEXT,
                status TEXT NOT NULL,
                mode TEXT NOT NULL,
                start_time TEXT NOT NULL,
                end_time TEXT,
                artifact_path TEXT,
                exit_code INTEGER,
                classification TEXT,
                duration_sec REAL,
                num_nodes INTEGER,
                hosts TEXT,
                command TEXT
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_identity
            ON runs(identity)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_session
            ON runs(session)
        """)
        self.conn.commit()

    def _warn(self, message: str) -> None:
        if self.verbose:
            print(f"{Fore.YELLOW}Warning: {message}{Style.RESET_ALL}")

    @staticmethod
    def _to_record(row: sqlite3.Row) -> RunRecord:
        return RunRecord(
            id=row['id'],
            identity=row['identity'],
            status=RunStatus(row['status']),
            session=row['session'],
            mode=row['mode'],
            start_time=row['start_time'],
            end_time=row['end_time'],
            artifact_path=row['artifact_path'],
            exit_code=row['exit_code'],
            classification=row['classification'],
            duration_sec=row['duration_sec'],
            num_nodes=row['num_nodes'],
            hosts=row['hosts'].split(',') if row['hosts'] else [],
            command=row['command'],
        )

    def _query(self, query: str, params: Sequence = ()) -> List[sqlite3.Row]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(query, params)
            return cursor.fetchall()
        except sqlite3.Error as e:
            raise LedgerError(f"Ledger query failed on {self.db_path}: {e}")

    def _insert(self, values: Dict) -> int:
        columns = ', '.join(values)
        placeholders = ', '.join('?' for _ in values)
        try:
            cursor = self.conn.cursor()
            cursor.execute(f"INSERT INTO runs ({columns}) VALUES ({placeholders})",
                           list(values.values()))
            self.conn.commit()
            return cursor.lastrowid
        except sqlite3.Error as e:
            raise LedgerError(f"Could not write to ledger {self.db_path}: {e}")

    def has_durable_completion(self, identity: str) -> bool:
        """True if a Completed attempt in this mode is backed by a sealed artifact.

        Raises:
            LedgerError: if the database or an artifact cannot be read
        """
        rows = self._query("""
            SELECT * FROM runs
            WHERE identity = ? AND status = ? AND mode = ?
            ORDER BY id DESC
        """, (identity, RunStatus.COMPLETED.value, self.mode))

        for row in rows:
            artifact = row['artifact_path']
            if not artifact or not Path(artifact).exists():
                continue
            marker = read_marker(Path(artifact))
            if (marker and marker['identity'] == identity
                    and marker['status'] == RunStatus.COMPLETED.value):
                return True
        return False

    def should_run(self, identity: str) -> bool:
        """Decide whether a configuration needs an attempt in this invocation.

        Unreadable state never causes a skip: redundant work is cheaper than
        a silently missing data point.
        """
        if not self.skip_finished:
            return True
        try:
            return not self.has_durable_completion(identity)
        except LedgerError as e:
            self._warn(f"{e}; re-running {identity}")
            return True

    def begin(self, config: ExperimentConfig, artifact_path: Optional[Path] = None,
              hosts: Sequence[str] = (), command: Optional[str] = None) -> RunRecord:
        """Create a Running record for a new attempt.

        Raises:
            DuplicateRunError: if this session already has a Running attempt
        """
        rows = self._query("""
            SELECT id FROM runs
            WHERE identity = ? AND session = ? AND status = ?
        """, (config.identity, self.session, RunStatus.RUNNING.value))
        if rows:
            raise DuplicateRunError(
                f"Attempt {rows[0]['id']} for {config.identity} is already running"
            )

        start_time = datetime.now().isoformat()
        run_id = self._insert({
            'session': self.session,
            'identity': config.identity,
            'config_json': json.dumps({k: str(v) for k, v in config.values.items()}),
            'status': RunStatus.RUNNING.value,
            'mode': self.mode,
            'start_time': start_time,
            'artifact_path': str(artifact_path) if artifact_path else None,
            'num_nodes': len(hosts) or None,
            'hosts': ','.join(hosts),
            'command': command,
        })
        return RunRecord(
            id=run_id,
            identity=config.identity,
            status=RunStatus.RUNNING,
            session=self.session,
            mode=self.mode,
            start_time=start_time,
            artifact_path=str(artifact_path) if artifact_path else None,
            num_nodes=len(hosts) or None,
            hosts=list(hosts),
            command=command,
        )

    def finish(self, record: RunRecord, outcome: Outcome) -> RunRecord:
        """Move a Running record to its terminal status.

        Repeating the call with the same outcome status is a no-op.

        Raises:
            InvalidTransitionError: if the record is not Running, or the
                outcome is not a terminal status
        """
        if not outcome.status.is_terminal:
            raise InvalidTransitionError(
                f"{outcome.status.value} is not a terminal status for run {record.id}"
            )
        rows = self._query("SELECT * FROM runs WHERE id = ?", (record.id,))
        if not rows:
            raise InvalidTransitionError(f"Run {record.id} is not in the ledger")
        stored = self._to_record(rows[0])

        if stored.status == outcome.status:
            return stored
        if stored.status != RunStatus.RUNNING:
            raise InvalidTransitionError(
                f"Run {record.id} is {stored.status.value}, cannot move to {outcome.status.value}"
            )

        end_time = datetime.now().isoformat()
        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                UPDATE runs
                SET status = ?, end_time = ?, exit_code = ?, classification = ?, duration_sec = ?
                WHERE id = ? AND status = ?
            """, (outcome.status.value, end_time, outcome.exit_code, outcome.classification,
                  outcome.duration_sec, record.id, RunStatus.RUNNING.value))
            self.conn.commit()
        except sqlite3.Error as e:
            raise LedgerError(f"Could not finalize run {record.id}: {e}")

        record.status = outcome.status
        record.end_time = end_time
        record.exit_code = outcome.exit_code
        record.classification = outcome.classification
        record.duration_sec = outcome.duration_sec
        return record

    def reconcile(self, artifacts: Iterable[Path]) -> int:
        """Rebuild records from sealed artifacts the database does not know.

        Returns:
            Number of records recovered
        """
        known = {row['artifact_path'] for row in self._query(
            "SELECT artifact_path FROM runs WHERE artifact_path IS NOT NULL")}

        recovered = 0
        for path in artifacts:
            if str(path) in known:
                continue
            try:
                marker = read_marker(path)
            except LedgerError as e:
                self._warn(str(e))
                continue
            if marker is None:
                continue
            try:
                status = RunStatus(marker['status'])
            except ValueError:
                self._warn(f"Unknown status '{marker['status']}' in {path}")
                continue
            self._insert({
                'session': 'recovered',
                'identity': marker['identity'],
                'status': status.value,
                'mode': marker.get('mode', MODE_LIVE),
                'start_time': marker.get('end_time', datetime.now().isoformat()),
                'end_time': marker.get('end_time'),
                'artifact_path': str(path),
                'exit_code': marker.get('exit_code'),
                'classification': marker.get('classification'),
                'duration_sec': marker.get('duration_sec'),
                'num_nodes': marker.get('num_nodes'),
                'hosts': ','.join(marker.get('hosts', [])),
            })
            recovered += 1
        return recovered

    def abandoned(self) -> List[RunRecord]:
        """Running records left behind by earlier sessions that were killed."""
        rows = self._query("""
            SELECT * FROM runs WHERE status = ? AND session != ? ORDER BY id
        """, (RunStatus.RUNNING.value, self.session))
        return [self._to_record(row) for row in rows]

    def records(self, session: Optional[str] = None,
                identity: Optional[str] = None) -> List[RunRecord]:
        query = "SELECT * FROM runs WHERE 1=1"
        params = []
        if session is not None:
            query += " AND session = ?"
            params.append(session)
        if identity is not None:
            query += " AND identity = ?"
            params.append(identity)
        query += " ORDER BY id"
        return [self._to_record(row) for row in self._query(query, params)]

    def status_counts(self, session: Optional[str] = None) -> Dict[str, int]:
        """Count records per status, optionally for one session."""
        counts: Dict[str, int] = {}
        for record in self.records(session=session):
            counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return counts

    def export_to_csv(self, output_path: Path, session: Optional[str] = None) -> int:
        """Export run records to a CSV file.

        Returns:
            Number of rows written
        """
        import pandas as pd

        records = self.records(session=session)
        if not records:
            return 0

        rows = []
        for record in records:
            rows.append({
                'id': record.id,
                'session': record.session,
                'identity': record.identity,
                'status': record.status.value,
                'classification': record.classification,
                'mode': record.mode,
                'num_nodes': record.num_nodes,
                'exit_code': record.exit_code,
                'duration_sec': record.duration_sec,
                'start_time': record.start_time,
                'end_time': record.end_time,
                'artifact_path': record.artifact_path,
            })

        df = pd.DataFrame(rows)
        df.to_csv(output_path, index=False)
        return len(rows)

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
