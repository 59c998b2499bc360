"""
Harness configuration.

The shell layer that prepares a node (modules, LD paths, SLURM headers)
hands us a YAML file plus a handful of command line overrides. Everything
is resolved once here into a ``HarnessConfig`` that is passed by reference
to every component; nothing downstream reads environment variables.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigValidationError


DEFAULT_CONFIG_NAME = 'sweep_config.yaml'

_VAR_PATTERN = re.compile(r'\$\{(\w+)\}|\$(\w+)')

TEST_DEFAULTS = {
    'min_bytes': '1M',
    'max_bytes': '512M',
    'step_factor': 2,
    'gpus_per_rank': 1,
    'threads': 1,
    'iterations': 20,
    'warmup_iters': 5,
    'check_iters': 1,
}


@dataclass
class PathsConfig:
    """External binaries and library trees."""
    launcher: Optional[Path] = None
    nccl_home: Optional[Path] = None
    tests_dir: Optional[Path] = None
    cuda_home: Optional[Path] = None
    mpi_home: Optional[Path] = None
    efa_path: Optional[Path] = None
    ofi_plugin_path: Optional[Path] = None
    topology_dir: Optional[Path] = None

    REQUIRED = ('launcher', 'nccl_home', 'tests_dir')
    OPTIONAL = ('cuda_home', 'mpi_home', 'efa_path', 'ofi_plugin_path', 'topology_dir')

    def library_dirs(self) -> List[Path]:
        """Library directories forwarded to every rank via LD_LIBRARY_PATH."""
        dirs = []
        if self.ofi_plugin_path:
            dirs.append(self.ofi_plugin_path / 'lib')
        if self.nccl_home:
            dirs.append(self.nccl_home / 'lib')
        if self.mpi_home:
            dirs.extend([self.mpi_home / 'lib64', self.mpi_home / 'lib'])
        if self.cuda_home:
            dirs.append(self.cuda_home / 'lib64')
        if self.efa_path:
            dirs.append(self.efa_path / 'lib')
        return dirs


@dataclass
class InventoryConfig:
    """Host inventory settings."""
    hostfile: Optional[Path] = None
    hostfiles: Dict[int, Path] = field(default_factory=dict)
    gpus_per_node: int = 8
    procs_per_node: Optional[int] = None
    gpu_as_node: bool = False

    @property
    def ranks_per_node(self) -> int:
        return self.procs_per_node or self.gpus_per_node

    def hostfile_for(self, num_nodes: int) -> Optional[Path]:
        """Hostfile paired with a node count (falls back to the shared one)."""
        return self.hostfiles.get(num_nodes, self.hostfile)


@dataclass
class RunConfig:
    """Sweep execution policy."""
    output_dir: Path = Path('./experiments_output')
    prefix: str = 'nccl_harness'
    skip_finished: bool = True
    dry_run: bool = False
    liveness_timeout: float = 600.0
    kill_grace: float = 10.0
    max_runtime: Optional[float] = None
    verbose: bool = True

    @property
    def log_dir(self) -> Path:
        return self.output_dir / 'logs'

    @property
    def ledger_path(self) -> Path:
        return self.output_dir / 'ledger.db'


@dataclass
class HarnessConfig:
    """Complete, validated harness configuration."""
    paths: PathsConfig = field(default_factory=PathsConfig)
    inventory: InventoryConfig = field(default_factory=InventoryConfig)
    run: RunConfig = field(default_factory=RunConfig)
    axes: Dict[str, Any] = field(default_factory=dict)
    test_defaults: Dict[str, Any] = field(default_factory=lambda: dict(TEST_DEFAULTS))
    mpi: Dict[str, Any] = field(default_factory=dict)
    env_vars: Dict[str, str] = field(default_factory=dict)
    nccl_debug: str = 'INFO'
    unsupported: List[Dict[str, Any]] = field(default_factory=list)
    environ: Dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        """Check every external input before the sweep is allowed to start.

        Raises:
            ConfigValidationError: naming the first offending input
        """
        for name in PathsConfig.REQUIRED:
            value = getattr(self.paths, name)
            if value is None:
                raise ConfigValidationError(f"paths.{name} is required but not set")
            if not value.exists():
                raise ConfigValidationError(f"paths.{name} not found at: {value}")

        for name in PathsConfig.OPTIONAL:
            value = getattr(self.paths, name)
            if value is not None and not value.exists():
                raise ConfigValidationError(f"paths.{name} not found at: {value}")

        if not os.access(self.paths.launcher, os.X_OK):
            raise ConfigValidationError(f"paths.launcher is not executable: {self.paths.launcher}")

        for collective in _as_list(self.axes.get('collective', [])):
            binary = self.paths.tests_dir / collective_binary(collective)
            if not binary.exists():
                raise ConfigValidationError(
                    f"Benchmark binary for collective '{collective}' not found at: {binary}"
                )

        if self.inventory.hostfile is None and not self.inventory.hostfiles:
            raise ConfigValidationError("inventory.hostfile is required but not set")
        for hostfile in [self.inventory.hostfile, *self.inventory.hostfiles.values()]:
            if hostfile is not None and not hostfile.is_file():
                raise ConfigValidationError(f"Hostfile not found at: {hostfile}")

        if self.inventory.gpus_per_node < 1:
            raise ConfigValidationError(
                f"inventory.gpus_per_node must be >= 1, got {self.inventory.gpus_per_node}"
            )
        if self.run.liveness_timeout <= 0:
            raise ConfigValidationError(
                f"run.liveness_timeout must be > 0, got {self.run.liveness_timeout}"
            )
        if self.run.max_runtime is not None and self.run.max_runtime <= 0:
            raise ConfigValidationError(
                f"run.max_runtime must be > 0, got {self.run.max_runtime}"
            )


def collective_binary(collective: Any) -> str:
    """Map a collective name to its benchmark binary (all-reduce -> all_reduce_perf)."""
    name = str(collective).strip().lower().replace('-', '_')
    if not name.endswith('_perf'):
        name = f"{name}_perf"
    return name


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def parse_nodes(nodes: Any) -> List[int]:
    """Parse a node count specification.

    Args:
        nodes: An int, a list of ints, or a string in one of the formats
               "N", "MIN-MAX" (e.g. "1-4") or "A,B,C" (e.g. "2,4,8")

    Returns:
        Ordered list of node counts
    """
    if isinstance(nodes, bool):
        raise ConfigValidationError(f"Invalid nodes value: {nodes!r}")
    if isinstance(nodes, int):
        values = [nodes]
    elif isinstance(nodes, (list, tuple)):
        values = []
        for item in nodes:
            values.extend(parse_nodes(item))
    else:
        text = str(nodes).strip()
        try:
            if ',' in text:
                values = [int(part.strip()) for part in text.split(',') if part.strip()]
            elif '-' in text:
                parts = text.split('-')
                if len(parts) != 2:
                    raise ValueError(text)
                min_nodes, max_nodes = int(parts[0]), int(parts[1])
                if max_nodes < min_nodes:
                    raise ConfigValidationError(
                        f"Invalid node range: min={min_nodes}, max={max_nodes}"
                    )
                values = list(range(min_nodes, max_nodes + 1))
            else:
                values = [int(text)]
        except ValueError:
            raise ConfigValidationError(
                f"Invalid nodes format '{nodes}'. Use N, MIN-MAX or A,B,C (e.g., 2, 1-4 or 2,4,8)"
            )

    for value in values:
        if value < 1:
            raise ConfigValidationError(f"Invalid node count: {value}")
    return values


def _expand(path: Any, environ: Dict[str, str]) -> Optional[Path]:
    """Expand ${VAR} and ~ in a configured path."""
    if path is None or path == '':
        return None
    text = _VAR_PATTERN.sub(lambda m: environ.get(m.group(1) or m.group(2), m.group(0)), str(path))
    if '$' in text:
        raise ConfigValidationError(f"Unexpanded variable in path: '{path}'")
    return Path(text).expanduser()


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def build_config(data: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> HarnessConfig:
    """Build a HarnessConfig from a parsed YAML mapping.

    Args:
        data: Mapping with the sections described in sweep_config.yaml
        environ: Environment snapshot used for path expansion and forwarded
                 to launched jobs

    Returns:
        Configuration (not yet validated)
    """
    environ = dict(environ or {})
    data = data or {}
    config = HarnessConfig(environ=environ)

    paths = data.get('paths', {}) or {}
    for name in PathsConfig.REQUIRED + PathsConfig.OPTIONAL:
        setattr(config.paths, name, _expand(paths.get(name), environ))

    inventory = data.get('inventory', {}) or {}
    config.inventory.hostfile = _expand(inventory.get('hostfile'), environ)
    try:
        config.inventory.hostfiles = {
            int(n): _expand(p, environ) for n, p in (inventory.get('hostfiles') or {}).items()
        }
        config.inventory.gpus_per_node = int(inventory.get('gpus_per_node', 8))
        if inventory.get('procs_per_node') is not None:
            config.inventory.procs_per_node = int(inventory['procs_per_node'])
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(f"Invalid inventory section: {e}")
    config.inventory.gpu_as_node = _to_bool(inventory.get('gpu_as_node', False))

    run = data.get('run', {}) or {}
    try:
        if run.get('output_dir'):
            config.run.output_dir = _expand(run['output_dir'], environ)
        config.run.prefix = str(run.get('prefix', config.run.prefix))
        config.run.skip_finished = _to_bool(run.get('skip_finished', config.run.skip_finished))
        config.run.dry_run = _to_bool(run.get('dry_run', config.run.dry_run))
        config.run.liveness_timeout = float(run.get('liveness_timeout', config.run.liveness_timeout))
        config.run.kill_grace = float(run.get('kill_grace', config.run.kill_grace))
        if run.get('max_runtime') is not None:
            config.run.max_runtime = float(run['max_runtime'])
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(f"Invalid run section: {e}")

    config.axes = dict(data.get('axes', {}) or {})
    config.test_defaults = {**TEST_DEFAULTS, **(data.get('test_defaults', {}) or {})}
    config.mpi = dict(data.get('mpi', {}) or {})
    config.env_vars = {str(k): str(v) for k, v in (data.get('env_vars', {}) or {}).items()}
    config.nccl_debug = str(data.get('nccl_debug', config.nccl_debug))
    config.unsupported = list(data.get('unsupported', []) or [])

    return config


def load_config(config_path: Path, overrides: Optional[Dict[str, Any]] = None,
                environ: Optional[Dict[str, str]] = None) -> HarnessConfig:
    """Load configuration from a YAML file and apply command line overrides.

    Args:
        config_path: Path to YAML config file
        overrides: Flat mapping of CLI overrides (None values are ignored)
        environ: Environment snapshot; defaults to the process environment

    Returns:
        Configuration (not yet validated)
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigValidationError(f"Config file not found: {config_path}")
    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Could not parse {config_path}: {e}")
    if not isinstance(data, dict):
        raise ConfigValidationError(f"Top level of {config_path} must be a mapping")

    config = build_config(data, environ if environ is not None else dict(os.environ))
    apply_overrides(config, overrides or {})
    return config


def apply_overrides(config: HarnessConfig, overrides: Dict[str, Any]) -> None:
    """Apply command line overrides in place."""
    if overrides.get('output_dir'):
        config.run.output_dir = Path(overrides['output_dir'])
    if overrides.get('hostfile'):
        config.inventory.hostfile = Path(overrides['hostfile'])
        config.inventory.hostfiles = {}
    if overrides.get('nodes'):
        config.axes['nodes'] = parse_nodes(overrides['nodes'])
    if overrides.get('skip_finished') is not None:
        config.run.skip_finished = overrides['skip_finished']
    if overrides.get('dry_run'):
        config.run.dry_run = True
    if overrides.get('liveness_timeout') is not None:
        config.run.liveness_timeout = float(overrides['liveness_timeout'])
    if overrides.get('prefix'):
        config.run.prefix = overrides['prefix']
    if overrides.get('quiet'):
        config.run.verbose = False
