"""
Base utilities for the operations layer.

This module provides foundational types and utilities used by all
operations modules.  The operations layer contains pure functions
(Sans-I/O) that handle business logic without touching the network or
the store.

Design principles:
- All functions are pure: same inputs always produce same outputs
- No network or store I/O - that's the caller's responsibility
- Plans describe WHAT to change, not HOW it is persisted
"""
from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Union


@dataclass(frozen=True)
class PlanRef:
    """
    Symbolic reference to a row created earlier in the same plan.
    Resolved to the real id when the plan is executed.
    """

    name: str


Target = Union[int, PlanRef]


@dataclass
class Mutation:
    """
    One step of a mutation plan.

    Attributes:
        op: "create", "update", "delete", "purge" (drop the generated
            occurrences of a master) or "regenerate" (purge and expand again)
        target: Event id (or PlanRef) to update/delete.  For creates, the
            name under which the new row can be referenced later.
        fields: Field values to write.  Values may be PlanRef objects,
            which are replaced by the referenced id on execution.
        regenerate: Re-expand materialized occurrences of this master
            after writing it
        cascade: For deletes - also delete every row under the master
    """

    op: str
    target: Optional[Target] = None
    fields: Dict[str, Any] = field(default_factory=dict)
    regenerate: bool = False
    cascade: bool = False


@dataclass
class MutationPlan:
    """
    Ordered list of mutations computed for one edit.

    Attributes:
        mutations: Steps, executed in order
        result: Which row id the edit resolves to (returned to the caller)
        touched: Masters whose series must be pushed to the server
        removed: Masters whose remote object must be deleted
    """

    mutations: List[Mutation] = field(default_factory=list)
    result: Optional[Target] = None
    touched: List[Target] = field(default_factory=list)
    removed: List[Target] = field(default_factory=list)

    def create(self, name: str, fields: Dict[str, Any], regenerate: bool = False) -> PlanRef:
        ref = PlanRef(name)
        self.mutations.append(
            Mutation(op="create", target=ref, fields=fields, regenerate=regenerate)
        )
        return ref

    def update(self, target: Target, fields: Dict[str, Any], regenerate: bool = False) -> None:
        self.mutations.append(
            Mutation(op="update", target=target, fields=fields, regenerate=regenerate)
        )

    def delete(self, target: Target, cascade: bool = False) -> None:
        self.mutations.append(Mutation(op="delete", target=target, cascade=cascade))

    def purge(self, target: Target) -> None:
        self.mutations.append(Mutation(op="purge", target=target))

    def regenerate(self, target: Target) -> None:
        self.mutations.append(Mutation(op="regenerate", target=target))

    def touch(self, target: Target) -> None:
        if target not in self.touched:
            self.touched.append(target)

    def __len__(self) -> int:
        return len(self.mutations)
