"""
nodeforge/utils/addressing.py

Deterministic private address allocation for cluster nodes.

Each role owns a contiguous block of host octets inside the subnet, starting at
its configured offset. The Nth node of a role always gets the same address, so
re-running a rollout never renumbers existing servers.
"""

from __future__ import annotations

import ipaddress
from typing import Hashable, List, Mapping, Tuple

from nodeforge.errors import ConfigError

MAX_OCTET = 255


def _prefix_octets(cidr: str) -> List[str]:
    try:
        net = ipaddress.ip_network(cidr, strict=False)
    except ValueError as exc:
        raise ConfigError(f"Invalid CIDR '{cidr}': {exc}") from exc
    if net.version != 4:
        raise ConfigError(f"Only IPv4 CIDRs are supported, got '{cidr}'.")
    return str(net.network_address).split(".")[:3]


def allocate(cidr: str, role_offset: int, index: int) -> str:
    """Return the private IP of node `index` in a role starting at `role_offset`.

    The first three octets come from the CIDR's network address; the fourth is
    `role_offset + index`.

    Args:
        cidr: Subnet the nodes live in, e.g. "10.0.1.0/24".
        role_offset: First host octet reserved for the role.
        index: Zero-based node index within the role.

    Returns:
        str: Dotted IPv4 address, e.g. "10.0.1.12".

    Raises:
        ConfigError: If the CIDR is invalid or the resulting octet is out of range.
    """
    if index < 0:
        raise ConfigError(f"Node index must be >= 0, got {index}.")
    octet = role_offset + index
    if octet < 0 or octet > MAX_OCTET:
        raise ConfigError(
            f"Host octet {octet} (offset {role_offset} + index {index}) "
            f"is outside 0..{MAX_OCTET} for '{cidr}'."
        )
    return ".".join(_prefix_octets(cidr) + [str(octet)])


def validate_address_ranges(
    ranges: Mapping[Hashable, Tuple[int, int]],
) -> None:
    """Check that per-role address blocks fit in one octet and do not collide.

    Args:
        ranges: key => (start_offset, max_node_count) for each role.

    Raises:
        ConfigError: On an overflowing block or two overlapping blocks.
    """
    blocks = []
    for key, (offset, count) in ranges.items():
        if offset < 0:
            raise ConfigError(f"Start offset for {key} must be >= 0, got {offset}.")
        if count <= 0:
            continue
        last = offset + count - 1
        if last > MAX_OCTET:
            raise ConfigError(
                f"Address block for {key} ({offset}..{last}) exceeds octet {MAX_OCTET}."
            )
        blocks.append((offset, last, key))

    blocks.sort(key=lambda b: b[0])
    for (start_a, end_a, key_a), (start_b, end_b, key_b) in zip(blocks, blocks[1:]):
        if start_b <= end_a:
            raise ConfigError(
                f"Address block for {key_a} ({start_a}..{end_a}) overlaps "
                f"{key_b} ({start_b}..{end_b})."
            )
