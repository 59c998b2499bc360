"""
Grid Generator

Expands the axis registry into the ordered list of configurations a sweep
will visit. Order and identities only depend on the axis declarations, so
re-running against an unchanged config reproduces the same plan. That is
what lets a later invocation pick up where an interrupted one stopped.
"""

import hashlib
import itertools
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Tuple

from .axes import AxisRegistry
from .cluster import ClusterShape
from .errors import EmptyAxisError


class ExperimentConfig:
    """Immutable assignment of one value to every axis."""

    __slots__ = ('_values', '_identity')

    def __init__(self, values: Mapping[str, Any]):
        self._values = MappingProxyType(dict(values))
        self._identity = ';'.join(f"{k}={self._values[k]}" for k in sorted(self._values))

    @property
    def values(self) -> Mapping[str, Any]:
        return self._values

    @property
    def identity(self) -> str:
        """Canonical string used for ledger lookups and artifact markers."""
        return self._identity

    @property
    def digest(self) -> str:
        """Short stable hash of the identity, used in file names."""
        return hashlib.sha1(self._identity.encode('utf-8')).hexdigest()[:12]

    @property
    def shape(self) -> ClusterShape:
        return self._values['nodes']

    @property
    def num_nodes(self) -> int:
        return self.shape.num_nodes

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    def __eq__(self, other) -> bool:
        if not isinstance(other, ExperimentConfig):
            return NotImplemented
        return self._identity == other._identity

    def __hash__(self) -> int:
        return hash(self._identity)

    def __repr__(self) -> str:
        return f"ExperimentConfig({self._identity})"

    @property
    def description(self) -> str:
        """Human-readable description of this configuration."""
        parts = []
        for name, value in self._values.items():
            if name == 'nodes':
                parts.append(f"{value.num_nodes} node(s)")
            elif name == 'collective':
                parts.append(str(value).replace('_perf', ''))
            else:
                parts.append(f"{name}={value}")
        return ' | '.join(parts)


@dataclass(frozen=True)
class SweepPlan:
    """Materialized, ordered configurations for one invocation."""
    configs: Tuple[ExperimentConfig, ...]
    rejected: Tuple[Tuple[Dict[str, Any], str], ...] = field(default=())

    def __len__(self) -> int:
        return len(self.configs)

    def __iter__(self) -> Iterator[ExperimentConfig]:
        return iter(self.configs)

    @property
    def shapes(self) -> List[ClusterShape]:
        """Distinct cluster shapes used by the plan, in first-use order."""
        shapes = []
        for config in self.configs:
            if 'nodes' in config.values and config.shape not in shapes:
                shapes.append(config.shape)
        return shapes


class GridGenerator:
    """Cartesian product of the registry's axes, filtered by its predicates."""

    def __init__(self, registry: AxisRegistry):
        self.registry = registry

    def generate(self) -> SweepPlan:
        """Produce the sweep plan.

        Raises:
            EmptyAxisError: if any axis has no values
        """
        axes = self.registry.axes
        for axis in axes:
            if len(axis) == 0:
                raise EmptyAxisError(f"Axis '{axis.name}' has no values")

        names = [axis.name for axis in axes]
        configs = []
        rejected = []
        seen = set()
        for combo in itertools.product(*(axis.values for axis in axes)):
            values = dict(zip(names, combo))
            reason = self.registry.rejection(values)
            if reason:
                rejected.append((values, reason))
                continue
            config = ExperimentConfig(values)
            if config.identity not in seen:
                seen.add(config.identity)
                configs.append(config)

        return SweepPlan(tuple(configs), tuple(rejected))
