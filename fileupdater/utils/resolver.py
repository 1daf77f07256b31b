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

"""
Dependency resolution.

Turns a requested set of paths into an install plan: the dependency closure
of the request, ordered so a file never comes before what it depends on.
Dependency cycles are collapsed into a single batch rather than rejected.

The graph is kept as an arena: nodes are indices into a sorted path list and
edges are index lists, so the traversal is iterative and the output does not
depend on set or dict ordering.
"""

import heapq
from collections import deque
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .collection import FileCollection, FileRecord, FileStatus, InstallPlan, PlanEntry
from .index import debug_log, log_message, max_version


def strongly_connected_components(adjacency: Sequence[Sequence[int]]) -> List[List[int]]:
    """
    Tarjan's algorithm without recursion.

    Args:
        adjacency: adjacency[i] lists the successors of node i

    Returns:
        List of components, each a sorted list of node indices
    """
    count = len(adjacency)
    index_of = [-1] * count
    low = [0] * count
    on_stack = [False] * count
    stack: List[int] = []
    components: List[List[int]] = []
    counter = 0

    for start in range(count):
        if index_of[start] != -1:
            continue
        index_of[start] = low[start] = counter
        counter += 1
        stack.append(start)
        on_stack[start] = True
        work = [(start, 0)]
        while work:
            node, position = work[-1]
            successors = adjacency[node]
            if position < len(successors):
                work[-1] = (node, position + 1)
                successor = successors[position]
                if index_of[successor] == -1:
                    index_of[successor] = low[successor] = counter
                    counter += 1
                    stack.append(successor)
                    on_stack[successor] = True
                    work.append((successor, 0))
                elif on_stack[successor]:
                    low[node] = min(low[node], index_of[successor])
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
            if low[node] == index_of[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack[member] = False
                    component.append(member)
                    if member == node:
                        break
                components.append(sorted(component))
    return components


def order_batches(nodes: Sequence[str], adjacency: Sequence[Sequence[int]]) -> List[List[str]]:
    """
    Collapse cycles and order the batches dependencies-first.

    adjacency[i] holds the dependencies of node i. Ties between independent
    batches are broken by their smallest path, which keeps the order stable.
    """
    components = strongly_connected_components(adjacency)
    component_of = {}
    for component_id, members in enumerate(components):
        for member in members:
            component_of[member] = component_id

    depends_on: List[Set[int]] = [set() for _ in components]
    dependents: List[Set[int]] = [set() for _ in components]
    for node, successors in enumerate(adjacency):
        for successor in successors:
            source, target = component_of[node], component_of[successor]
            if source != target:
                depends_on[source].add(target)
                dependents[target].add(source)

    remaining = [len(deps) for deps in depends_on]
    ready: List[Tuple[str, int]] = []
    for component_id, members in enumerate(components):
        if remaining[component_id] == 0:
            heapq.heappush(ready, (nodes[members[0]], component_id))

    batches: List[List[str]] = []
    while ready:
        _, component_id = heapq.heappop(ready)
        batches.append([nodes[member] for member in components[component_id]])
        for dependent in dependents[component_id]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, (nodes[components[dependent][0]], dependent))
    return batches


class DependencyResolver:
    """Computes ordered, dependency-closed install plans."""

    def _needs_action(self, record: FileRecord, required: Optional[str]) -> bool:
        status = record.status
        if status == FileStatus.CURRENT:
            return required is not None and not record.satisfies(required)
        if status == FileStatus.LOCALLY_MODIFIED:
            return record.remote_changed
        return True

    def resolve(self, requested: Iterable[str], collection: FileCollection) -> InstallPlan:
        """
        Resolve the requested paths against the collection.

        Args:
            requested: paths the caller wants updated
            collection: synced FileCollection

        Returns:
            InstallPlan: superset of requested, topologically ordered

        Raises:
            ValueError: if a requested path is unknown
        """
        requested_paths = sorted(set(requested))
        unknown = [path for path in requested_paths if path not in collection]
        if unknown:
            raise ValueError(f"Unknown path(s) requested: {', '.join(unknown)}")

        constraints: Dict[str, List[Tuple[str, str]]] = {}
        visited = set(requested_paths)
        queue = deque(requested_paths)
        while queue:
            path = queue.popleft()
            for edge in collection.edges_from(path):
                if edge.to_path == path:
                    continue
                constraints.setdefault(edge.to_path, []).append((path, edge.min_version))
                if edge.to_path not in visited:
                    visited.add(edge.to_path)
                    queue.append(edge.to_path)

        included = set(requested_paths)
        for path in visited:
            if path in included:
                continue
            record = collection.get(path)
            required = max_version(*(minimum for _, minimum in constraints.get(path, [])))
            if record is None or self._needs_action(record, required):
                included.add(path)

        nodes = sorted(included)
        position = {path: i for i, path in enumerate(nodes)}
        adjacency: List[List[int]] = []
        for path in nodes:
            record = collection.get(path)
            deps = [] if record is None else sorted(
                {position[d.path] for d in record.dependencies if d.path in position and d.path != path}
            )
            adjacency.append(deps)

        batches = order_batches(nodes, adjacency)
        requested_set = set(requested_paths)
        entries = []
        for batch_index, batch in enumerate(batches):
            for path in batch:
                record = collection.get(path)
                available = record is not None and record.has_remote and not record.obsolete
                path_constraints = sorted(constraints.get(path, []))
                entry = PlanEntry(
                    path=path,
                    target_version=record.remote_version if available else None,
                    required_version=max_version(*(minimum for _, minimum in path_constraints)),
                    constraints=path_constraints,
                    batch=batch_index,
                    requested=path in requested_set,
                    available=available,
                )
                if entry.soft_conflict:
                    log_message(
                        f"Soft conflict: {path} requires {entry.required_version or 'a release'} "
                        f"but {entry.target_version or 'nothing'} is available", "WARNING"
                    )
                entries.append(entry)

        debug_log(f"Resolved {len(requested_paths)} requested into {len(entries)} entries in {len(batches)} batches")
        return InstallPlan(entries=entries, batches=batches, collection=collection)
