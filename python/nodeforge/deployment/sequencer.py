"""
nodeforge/deployment/sequencer.py

Ordered node creation within a role.

Each slot moves PENDING -> CREATING -> READY. Slot i only enters CREATING once
slot i-1 is READY and, for every slot except the bootstrap node, once the
bootstrap node's address is known. The address travels through the loop in a
SequenceState value instead of shared mutable state, so concurrent role
sequences can start from the same state safely.

A failed creation halts the role: later slots stay PENDING and ready nodes are
left running. Nothing is rolled back.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from nodeforge.errors import ProvisioningError
from nodeforge.models.nodes import NodeState, ProvisionedNode
from nodeforge.models.reports import RoleRollout
from nodeforge.models.topology import NodeSpec, Role

logger = logging.getLogger(__name__)


class SequenceState(BaseModel):
    """Data carried from one creation step to the next.

    Attributes:
        bootstrap_address: Private IP of the ready bootstrap node, once known.
        previous: The most recently readied node of this sequence.
    """

    model_config = ConfigDict(frozen=True)

    bootstrap_address: Optional[str] = None
    previous: Optional[ProvisionedNode] = None

    def advance(self, node: ProvisionedNode) -> SequenceState:
        return SequenceState(
            bootstrap_address=(
                node.private_ip if node.is_bootstrap else self.bootstrap_address
            ),
            previous=node,
        )


CreateNode = Callable[[NodeSpec, SequenceState], Awaitable[ProvisionedNode]]


async def run_role_sequence(
    role: Role,
    specs: Sequence[NodeSpec],
    create_node: CreateNode,
    state: SequenceState,
    stop_event: Optional[asyncio.Event] = None,
) -> Tuple[RoleRollout, SequenceState]:
    """
    Create the nodes in `specs` one after another, in index order.

    Args:
        role: Role being rolled out; every spec must carry it.
        specs: Slots to create. Need not start at 0 (followers after bootstrap).
        create_node: Awaitable that creates one node given the current state.
            Must raise ProvisioningError on failure.
        state: State to start from; carries the bootstrap address for followers.
        stop_event: Once set, no further slot is started. A creation already in
            flight always runs to completion.

    Returns:
        (RoleRollout, SequenceState): per-slot outcome and the state after the
        last ready node.

    Raises:
        ProvisioningError: If a non-bootstrap slot would start without a
            bootstrap address. This is a sequencing bug, not a provider failure.
    """
    ordered = sorted(specs, key=lambda s: s.index)
    rollout = RoleRollout(
        role=role, states={spec.index: NodeState.PENDING for spec in ordered}
    )

    for spec in ordered:
        if spec.role is not role:
            raise ValueError(f"Spec {spec} does not belong to role {role.value}")
        if stop_event is not None and stop_event.is_set():
            rollout.stopped = True
            logger.info(
                "Stop requested; %s rollout halted before index %d",
                role.display_name,
                spec.index,
            )
            break
        if not spec.is_bootstrap and state.bootstrap_address is None:
            raise ProvisioningError(
                "Bootstrap node is not ready", role=role, index=spec.index
            )

        rollout.states[spec.index] = NodeState.CREATING
        try:
            node = await create_node(spec, state)
        except ProvisioningError as exc:
            rollout.states[spec.index] = NodeState.FAILED
            if exc.role is None:
                exc.role = role
            if exc.index is None:
                exc.index = spec.index
            rollout.error = exc
            logger.error(
                "%s %d failed, halting role rollout: %s",
                role.display_name,
                spec.index,
                exc,
            )
            break

        rollout.states[spec.index] = NodeState.READY
        rollout.nodes.append(node)
        state = state.advance(node)
        logger.info(
            "%s %d ready at %s", role.display_name, spec.index, node.private_ip
        )

    return rollout, state
