"""
HOMESERVER Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .collection import Decision, InstallPlan
from .index import log_message


class ConflictKind(str, Enum):
    LOCAL_MODIFICATION = "local-modification"
    VERSION_MISMATCH = "version-mismatch"
    MISSING_DEPENDENCY = "missing-dependency"


@dataclass(frozen=True)
class Conflict:
    """Contested file first, then the files taking part in the disagreement."""
    kind: ConflictKind
    paths: Tuple[str, ...]
    message: str

    @property
    def path(self) -> str:
        return self.paths[0]

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


class ConflictDetector:
    """Finds plan entries that need a human decision. Never resolves them."""

    def detect(self, plan: InstallPlan) -> List[Conflict]:
        conflicts = []
        for entry in plan:
            record = plan.collection.get(entry.path)

            if record is not None and record.is_locally_modified and entry.available:
                conflicts.append(Conflict(
                    kind=ConflictKind.LOCAL_MODIFICATION,
                    paths=(entry.path,),
                    message=(f"{entry.path} was modified locally and the update would overwrite it "
                             f"with version {entry.target_version}"),
                ))

            if not entry.available:
                dependents = tuple(sorted({dependent for dependent, _ in entry.constraints}))
                conflicts.append(Conflict(
                    kind=ConflictKind.MISSING_DEPENDENCY,
                    paths=(entry.path,) + dependents,
                    message=(f"{entry.path} is not available from the update source"
                             + (f" but is required by {', '.join(dependents)}" if dependents else "")),
                ))
            elif entry.soft_conflict:
                demanding = tuple(sorted({
                    dependent for dependent, minimum in entry.constraints
                    if minimum == entry.required_version
                }))
                conflicts.append(Conflict(
                    kind=ConflictKind.VERSION_MISMATCH,
                    paths=(entry.path,) + demanding,
                    message=(f"{', '.join(demanding)} require {entry.path} >= {entry.required_version}, "
                             f"but only {entry.target_version} is available"),
                ))

        conflicts.sort(key=lambda c: (c.path, c.kind.value))
        return conflicts


def apply_decisions(plan: InstallPlan, conflicts: List[Conflict],
                    decisions: Optional[Dict[str, Decision]]) -> Tuple[InstallPlan, List[Conflict]]:
    """
    Apply external decisions to a plan.

    Args:
        plan: the resolved plan
        conflicts: output of ConflictDetector.detect(plan)
        decisions: contested path -> Decision

    Returns:
        (InstallPlan, unresolved): the adjusted plan and conflicts still lacking a decision
    """
    decisions = {path: Decision(value) for path, value in (decisions or {}).items()}
    drop = set()
    recorded: Dict[str, Decision] = dict(plan.decisions)
    unresolved = []

    for conflict in conflicts:
        decision = decisions.get(conflict.path)
        if decision is None:
            unresolved.append(conflict)
            continue
        recorded[conflict.path] = decision
        record = plan.collection.get(conflict.path)
        if record is not None:
            record.action = decision
        if decision == Decision.KEEP_LOCAL:
            drop.add(conflict.path)
        elif decision == Decision.SKIP:
            drop.add(conflict.path)
            drop.update(plan.dependents_closure(conflict.path))
        log_message(f"Conflict on {conflict.path} resolved: {decision.value}")

    # A dependency that is not available can never be installed.
    for conflict in conflicts:
        if conflict.kind == ConflictKind.MISSING_DEPENDENCY and conflict.path in recorded:
            drop.add(conflict.path)

    adjusted = plan.without(drop)
    adjusted.decisions = recorded
    for skipped in sorted(drop):
        record = plan.collection.get(skipped)
        if record is not None and record.action is None:
            record.action = Decision.SKIP
    return adjusted, [c for c in unresolved if c.path not in drop]
