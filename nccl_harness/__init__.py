"""
NCCL Harness Package

Resumable sweeps of collective-communication benchmarks:
- Axis registry and deterministic grid generation
- Host inventory resolution
- Supervised launches with a liveness timeout
- Durable per-attempt artifacts and a run ledger
"""

from .axes import AxisRegistry, ParameterAxis, build_registry
from .cluster import ClusterInventory, ClusterResolver, ClusterShape, HostSet
from .config import HarnessConfig, load_config
from .executor import LaunchOrchestrator
from .grid import ExperimentConfig, GridGenerator, SweepPlan
from .ledger import RunLedger
from .models import Outcome, RunRecord, RunStatus
from .run_logger import RunLogger, read_marker
from .sweep import SweepResult, SweepRunner

__all__ = [
    'AxisRegistry',
    'ParameterAxis',
    'build_registry',
    'ClusterInventory',
    'ClusterResolver',
    'ClusterShape',
    'HostSet',
    'HarnessConfig',
    'load_config',
    'LaunchOrchestrator',
    'ExperimentConfig',
    'GridGenerator',
    'SweepPlan',
    'RunLedger',
    'Outcome',
    'RunRecord',
    'RunStatus',
    'RunLogger',
    'read_marker',
    'SweepResult',
    'SweepRunner',
]

__version__ = '0.1.0'
