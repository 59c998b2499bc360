from __future__ import annotations

from pathlib import Path

import pytest

from nccl_harness.cluster import ClusterResolver, ClusterShape, read_servers
from nccl_harness.errors import ConfigValidationError, InsufficientInventoryError


def _hostfile(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "hostfile"
    path.write_text(text)
    return path


def test_read_servers_skips_comments_and_slots(tmp_path: Path) -> None:
    path = _hostfile(tmp_path, "# header\n\nnode01 slots=8\nnode02  # spare\n  node03\n")
    assert read_servers(path) == ["node01", "node02", "node03"]


def test_resolve_returns_first_hosts_in_order(tmp_path: Path) -> None:
    path = _hostfile(tmp_path, "h1\nh2\nh3\nh4\n")
    resolver = ClusterResolver(gpus_per_host=8)

    hosts = resolver.resolve(ClusterShape(3, path))

    assert hosts.hosts == ("h1", "h2", "h3")
    assert hosts.num_nodes == 3
    assert hosts.total_gpus == 24
    assert hosts.host_string() == "h1:8,h2:8,h3:8"
    assert hosts.host_string(4) == "h1:4,h2:4,h3:4"


def test_resolve_full_inventory(tmp_path: Path) -> None:
    path = _hostfile(tmp_path, "h1\nh2\n")
    hosts = ClusterResolver(gpus_per_host=4).resolve(ClusterShape(2, path))
    assert hosts.hosts == ("h1", "h2")


def test_resolve_more_nodes_than_inventory(tmp_path: Path) -> None:
    path = _hostfile(tmp_path, "h1\nh2\n")
    resolver = ClusterResolver(gpus_per_host=8)

    with pytest.raises(InsufficientInventoryError) as excinfo:
        resolver.resolve(ClusterShape(3, path))

    assert excinfo.value.requested == 3
    assert excinfo.value.available == 2


def test_validate_checks_every_shape(tmp_path: Path) -> None:
    path = _hostfile(tmp_path, "h1\nh2\n")
    resolver = ClusterResolver(gpus_per_host=8)

    with pytest.raises(InsufficientInventoryError):
        resolver.validate([ClusterShape(1, path), ClusterShape(2, path), ClusterShape(4, path)])


def test_empty_inventory_is_a_validation_error(tmp_path: Path) -> None:
    path = _hostfile(tmp_path, "# nobody home\n")
    with pytest.raises(ConfigValidationError, match="No hosts"):
        ClusterResolver(gpus_per_host=8).resolve(ClusterShape(1, path))


def test_missing_hostfile_is_a_validation_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigValidationError):
        ClusterResolver(gpus_per_host=8).resolve(ClusterShape(1, tmp_path / "nope"))
