"""
nodeforge/models/reports.py

Results of a rollout pass. Errors are kept as the exception objects that
halted a role so callers can inspect role, index and cause.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from nodeforge.errors import ProvisioningError
from nodeforge.models.nodes import NodeState, ProvisionedNode
from nodeforge.models.registry import ReconcileReport
from nodeforge.models.topology import Role


class RoleRollout(BaseModel):
    """Outcome of one role sequence.

    Attributes:
        role: The role that was rolled out.
        states: index => final NodeState for every slot the sequence covered.
        nodes: Ready nodes in index order.
        error: The error that halted the sequence, if any.
        stopped: True if a stop request prevented later slots from starting.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    role: Role
    states: Dict[int, NodeState] = Field(default_factory=dict)
    nodes: List[ProvisionedNode] = Field(default_factory=list)
    error: Optional[ProvisioningError] = None
    stopped: bool = False

    @property
    def complete(self) -> bool:
        return all(state is NodeState.READY for state in self.states.values())


class DeployReport(BaseModel):
    """Outcome of a full reconciliation pass."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    stage: str
    rollouts: List[RoleRollout] = Field(default_factory=list)
    deleted_servers: List[str] = Field(default_factory=list)
    errors: List[ProvisioningError] = Field(default_factory=list)
    registry: Optional[ReconcileReport] = None

    @property
    def nodes(self) -> List[ProvisionedNode]:
        return [node for rollout in self.rollouts for node in rollout.nodes]

    @property
    def ok(self) -> bool:
        registry_ok = self.registry is None or self.registry.ok
        return not self.errors and registry_ok
