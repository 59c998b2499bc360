"""
Axis Registry

Declares the configurable dimensions of a sweep and the compatibility
predicates that rule out combinations which cannot (or should not) run.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .cluster import ClusterShape
from .config import HarnessConfig, collective_binary, parse_nodes
from .errors import ConfigValidationError


# Axes are always combined in this order, first axis varying slowest
AXIS_ORDER = (
    'collective',
    'op',
    'dtype',
    'algorithm',
    'proto',
    'channels',
    'chunks',
    'max_bytes',
    'nodes',
    'repetition',
)

INT_AXES = {'channels', 'chunks', 'repetition'}

# A predicate returns None when the combination is fine, otherwise a reason
Predicate = Callable[[Dict[str, Any]], Optional[str]]


@dataclass(frozen=True)
class ParameterAxis:
    """One independent configurable dimension."""
    name: str
    values: Tuple[Any, ...]

    def __post_init__(self):
        seen = set()
        for value in self.values:
            key = str(value)
            if key in seen:
                raise ConfigValidationError(f"Axis '{self.name}' lists value '{key}' more than once")
            seen.add(key)

    def __len__(self) -> int:
        return len(self.values)


class AxisRegistry:
    """Ordered collection of axes plus compatibility predicates."""

    def __init__(self):
        self._axes: Dict[str, ParameterAxis] = {}
        self._predicates: List[Tuple[str, Predicate]] = []

    def register(self, name: str, values) -> ParameterAxis:
        if name in self._axes:
            raise ConfigValidationError(f"Axis '{name}' declared twice")
        axis = ParameterAxis(name, tuple(values))
        self._axes[name] = axis
        return axis

    def add_predicate(self, name: str, predicate: Predicate) -> None:
        self._predicates.append((name, predicate))

    @property
    def axes(self) -> List[ParameterAxis]:
        return list(self._axes.values())

    def get(self, name: str) -> Optional[ParameterAxis]:
        return self._axes.get(name)

    def rejection(self, values: Dict[str, Any]) -> Optional[str]:
        """First reason a combination is rejected, or None if all predicates admit it."""
        for name, predicate in self._predicates:
            reason = predicate(values)
            if reason:
                return f"{name}: {reason}"
        return None


class UnsupportedComboRules:
    """
    Rejects combinations listed under ``unsupported`` in the config.

    Usage:
        rules = UnsupportedComboRules([{'collective': 'alltoall', 'algorithm': 'tree'}])
        reason = rules({'collective': 'alltoall_perf', 'algorithm': 'tree', ...})
    """

    MATCH_KEYS = ('collective', 'op', 'dtype', 'algorithm', 'proto')

    def __init__(self, rules: List[Dict[str, Any]]):
        self.rules = []
        for rule in rules:
            if not isinstance(rule, dict):
                raise ConfigValidationError(f"Unsupported-combination rule must be a mapping: {rule!r}")
            unknown = set(rule) - set(self.MATCH_KEYS) - {'min_nodes', 'max_nodes', 'reason'}
            if unknown:
                raise ConfigValidationError(f"Unknown keys in unsupported rule {rule}: {sorted(unknown)}")
            self.rules.append(rule)

    @staticmethod
    def _normalize(key: str, value: Any) -> str:
        if key == 'collective' and str(value).lower() != 'any':
            return collective_binary(value)
        return str(value).lower()

    def _matches(self, rule: Dict[str, Any], values: Dict[str, Any]) -> bool:
        for key in self.MATCH_KEYS:
            if key not in rule:
                continue
            expected = self._normalize(key, rule[key])
            if expected == 'any':
                continue
            if key not in values or self._normalize(key, values[key]) != expected:
                return False

        shape = values.get('nodes')
        num_nodes = shape.num_nodes if isinstance(shape, ClusterShape) else None
        if 'max_nodes' in rule and (num_nodes is None or num_nodes > rule['max_nodes']):
            return False
        if 'min_nodes' in rule and (num_nodes is None or num_nodes < rule['min_nodes']):
            return False
        return True

    def __call__(self, values: Dict[str, Any]) -> Optional[str]:
        for rule in self.rules:
            if self._matches(rule, values):
                return rule.get('reason', f"matches unsupported rule {rule}")
        return None


def topology_file_name(collective: str, algorithm: str, num_nodes: int, num_gpus: int,
                       channels: int, chunks: int, gpu_as_node: bool) -> str:
    """Name of the algorithm XML for a combination.

    Op, dtype and repetition do not apply to the algorithm XML.
    """
    short_collective = collective_binary(collective)[:-len('_perf')].replace('_', '')
    return (f"{short_collective}_{algorithm}_node{num_nodes}_gpu{num_gpus}"
            f"_mcl{channels}_mck{chunks}_gan{1 if gpu_as_node else 0}.xml")


class TopologyPredicate:
    """Admits a combination only if its topology descriptor exists."""

    def __init__(self, topology_dir: Path, gpus_per_node: int, gpu_as_node: bool):
        self.topology_dir = Path(topology_dir)
        self.gpus_per_node = gpus_per_node
        self.gpu_as_node = gpu_as_node

    def path_for(self, values: Dict[str, Any]) -> Optional[Path]:
        if 'collective' not in values or 'algorithm' not in values or 'nodes' not in values:
            return None
        num_nodes = values['nodes'].num_nodes
        name = topology_file_name(
            collective=values['collective'],
            algorithm=values['algorithm'],
            num_nodes=num_nodes,
            num_gpus=num_nodes * self.gpus_per_node,
            channels=values.get('channels', 1),
            chunks=values.get('chunks', 1),
            gpu_as_node=self.gpu_as_node,
        )
        return self.topology_dir / name

    def __call__(self, values: Dict[str, Any]) -> Optional[str]:
        path = self.path_for(values)
        if path is not None and not path.exists():
            return f"no topology file {path.name}"
        return None


def _coerce(name: str, raw: Any, config: HarnessConfig) -> List[Any]:
    if name == 'nodes':
        return [
            ClusterShape(n, config.inventory.hostfile_for(n))
            for n in parse_nodes(raw)
        ]
    if name == 'repetition' and isinstance(raw, int) and not isinstance(raw, bool):
        if raw < 1:
            raise ConfigValidationError(f"axes.repetition must be >= 1, got {raw}")
        return list(range(raw))

    values = list(raw) if isinstance(raw, (list, tuple)) else [raw]
    if name in INT_AXES:
        try:
            return [int(v) for v in values]
        except (TypeError, ValueError):
            raise ConfigValidationError(f"axes.{name} values must be integers, got {values}")
    if name == 'collective':
        return [collective_binary(v) for v in values]
    return [str(v) for v in values]


def build_registry(config: HarnessConfig) -> AxisRegistry:
    """Build the axis registry declared by a harness configuration."""
    unknown = set(config.axes) - set(AXIS_ORDER)
    if unknown:
        raise ConfigValidationError(
            f"Unknown axes {sorted(unknown)}. Valid axes: {', '.join(AXIS_ORDER)}"
        )
    for required in ('collective', 'nodes'):
        if required not in config.axes:
            raise ConfigValidationError(f"axes.{required} must be declared")

    registry = AxisRegistry()
    for name in AXIS_ORDER:
        if name in config.axes:
            registry.register(name, _coerce(name, config.axes[name], config))

    for shape in registry.get('nodes').values:
        if shape.hostfile is None:
            raise ConfigValidationError(f"No hostfile configured for {shape.num_nodes} nodes")

    if config.unsupported:
        registry.add_predicate('unsupported', UnsupportedComboRules(config.unsupported))
    if config.paths.topology_dir is not None:
        registry.add_predicate('topology', TopologyPredicate(
            config.paths.topology_dir,
            config.inventory.gpus_per_node,
            config.inventory.gpu_as_node,
        ))
    return registry
