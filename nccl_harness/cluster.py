"""
Host inventories and node-count resolution.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import ConfigValidationError, InsufficientInventoryError


def read_servers(servers_file: Path) -> List[str]:
    """Read host identifiers from a hostfile.

    One host per line. Blank lines and ``#`` comments are skipped and only
    the first word is kept, so OpenMPI style ``host slots=8`` lines work too.

    Args:
        servers_file: Path to hostfile

    Returns:
        Host identifiers in file order
    """
    servers = []
    with open(servers_file, 'r') as f:
        for line in f:
            line = line.split('#')[0].strip()
            if line:
                servers.append(line.split()[0])
    return servers


@dataclass(frozen=True)
class ClusterShape:
    """A node count paired with the hostfile it is drawn from."""
    num_nodes: int
    hostfile: Path

    def __str__(self) -> str:
        # Identity only depends on the node count; the hostfile is derived from it
        return str(self.num_nodes)


@dataclass(frozen=True)
class ClusterInventory:
    """Ordered hosts from one hostfile."""
    hosts: Tuple[str, ...]
    gpus_per_host: int
    source: str = ""

    @classmethod
    def from_file(cls, hostfile: Path, gpus_per_host: int) -> 'ClusterInventory':
        return cls(tuple(read_servers(hostfile)), gpus_per_host, str(hostfile))

    def __len__(self) -> int:
        return len(self.hosts)


@dataclass(frozen=True)
class HostSet:
    """Concrete hosts handed to the launcher for one attempt."""
    hosts: Tuple[str, ...]
    gpus_per_host: int

    @property
    def num_nodes(self) -> int:
        return len(self.hosts)

    @property
    def total_gpus(self) -> int:
        return self.num_nodes * self.gpus_per_host

    def host_string(self, slots: Optional[int] = None) -> str:
        """MPI host string like "ip1:8,ip2:8".

        Args:
            slots: Ranks per host; defaults to the GPUs per host
        """
        slots = slots or self.gpus_per_host
        return ','.join(f"{host}:{slots}" for host in self.hosts)


class ClusterResolver:
    """Maps a requested node count to the first N hosts of an inventory."""

    def __init__(self, gpus_per_host: int):
        self.gpus_per_host = gpus_per_host
        self._inventories: Dict[Path, ClusterInventory] = {}

    def inventory(self, hostfile: Path) -> ClusterInventory:
        """Load (once) and return the inventory for a hostfile."""
        hostfile = Path(hostfile)
        if hostfile not in self._inventories:
            try:
                inventory = ClusterInventory.from_file(hostfile, self.gpus_per_host)
            except OSError as e:
                raise ConfigValidationError(f"Could not read hostfile {hostfile}: {e}")
            if not inventory.hosts:
                raise ConfigValidationError(f"No hosts found in {hostfile}")
            self._inventories[hostfile] = inventory
        return self._inventories[hostfile]

    def resolve(self, shape: ClusterShape) -> HostSet:
        """Select hosts for a cluster shape.

        Raises:
            InsufficientInventoryError: if the inventory is shorter than requested
        """
        inventory = self.inventory(shape.hostfile)
        if shape.num_nodes > len(inventory):
            raise InsufficientInventoryError(shape.num_nodes, len(inventory), inventory.source)
        return HostSet(inventory.hosts[:shape.num_nodes], inventory.gpus_per_host)

    def validate(self, shapes: Iterable[ClusterShape]) -> None:
        """Check every shape of a sweep before anything is launched."""
        for shape in shapes:
            self.resolve(shape)
