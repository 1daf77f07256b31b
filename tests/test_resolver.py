from __future__ import annotations

import random

import pytest

from fileupdater.utils.collection import Dependency, DependencyEdge, FileCollection, FileRecord
from fileupdater.utils.resolver import DependencyResolver, order_batches, strongly_connected_components
from fileupdater.utils.version_index import VersionIndex


def _sync(mirror, root):
    collection, _ = VersionIndex(root.path, mirror.source()).sync()
    return collection


def test_dependency_is_ordered_before_its_dependent(mirror, root) -> None:
    mirror.publish("lib.py", b"lib v2", "2.0", previous=[("1.0", b"lib v1")])
    mirror.publish("core.py", b"core v2", "2.0", dependencies=[("lib.py", "2.0")], previous=[("1.0", b"core v1")])
    root.put("lib.py", b"lib v1", "1.0")
    root.put("core.py", b"core v1", "1.0")

    plan = DependencyResolver().resolve({"core.py"}, _sync(mirror, root))

    assert plan.paths() == ["lib.py", "core.py"]
    assert [entry.target_version for entry in plan] == ["2.0", "2.0"]
    assert plan.entry("lib.py").required_version == "2.0"
    assert plan.entry("core.py").requested
    assert not plan.entry("lib.py").requested


def test_satisfied_dependency_is_left_out(mirror, root) -> None:
    mirror.publish("lib.py", b"lib v2", "2.0")
    mirror.publish("app.py", b"app v2", "2.0", dependencies=[("lib.py", "2.0")], previous=[("1.0", b"app v1")])
    root.put("lib.py", b"lib v2", "2.0")
    root.put("app.py", b"app v1", "1.0")

    plan = DependencyResolver().resolve(["app.py"], _sync(mirror, root))
    assert plan.paths() == ["app.py"]


def test_highest_minimum_wins_and_unavailable_version_is_soft_conflict(mirror, root) -> None:
    mirror.publish("lib.py", b"lib v2", "2.0", previous=[("1.0", b"lib v1")])
    mirror.publish("a.py", b"a", "1.0", dependencies=[("lib.py", "1.5")])
    mirror.publish("b.py", b"b", "1.0", dependencies=[("lib.py", "3.0")])
    root.put("lib.py", b"lib v1", "1.0")

    plan = DependencyResolver().resolve(["a.py", "b.py"], _sync(mirror, root))
    entry = plan.entry("lib.py")

    assert entry.required_version == "3.0"
    assert entry.target_version == "2.0"
    assert entry.soft_conflict
    assert sorted(entry.constraints) == [("a.py", "1.5"), ("b.py", "3.0")]


def test_missing_dependency_is_planned_as_unavailable(mirror, root) -> None:
    mirror.publish("app.py", b"app", "1.0", dependencies=[("missing.py", "1.0")])
    plan = DependencyResolver().resolve(["app.py"], _sync(mirror, root))

    assert plan.paths() == ["missing.py", "app.py"]
    assert not plan.entry("missing.py").available
    assert plan.entry("missing.py").soft_conflict


def test_cycle_is_collapsed_into_one_batch(mirror, root) -> None:
    mirror.publish("a.py", b"a", "1.0", dependencies=[("b.py", "1.0")])
    mirror.publish("b.py", b"b", "1.0", dependencies=[("a.py", "1.0")])
    mirror.publish("c.py", b"c", "1.0", dependencies=[("a.py", "1.0")])

    plan = DependencyResolver().resolve(["c.py"], _sync(mirror, root))

    assert plan.batches == [["a.py", "b.py"], ["c.py"]]
    assert plan.entry("a.py").batch == plan.entry("b.py").batch == 0


def test_unknown_request_is_rejected(mirror, root) -> None:
    mirror.publish("a.py", b"a", "1.0")
    with pytest.raises(ValueError):
        DependencyResolver().resolve(["nope.py"], _sync(mirror, root))


def test_strongly_connected_components_handles_long_chains() -> None:
    size = 5000
    adjacency = [[i + 1] for i in range(size - 1)] + [[0]]
    components = strongly_connected_components(adjacency)
    assert len(components) == 1
    assert len(components[0]) == size


def test_order_batches_breaks_ties_by_smallest_path() -> None:
    nodes = ["a", "b", "c", "d"]
    adjacency = [[], [], [], []]
    assert order_batches(nodes, adjacency) == [["a"], ["b"], ["c"], ["d"]]


def _random_collection(seed: int, tmp_path) -> FileCollection:
    rng = random.Random(seed)
    paths = [f"pkg/mod{i:02d}.py" for i in range(25)]
    collection = FileCollection(tmp_path)
    for path in paths:
        deps = rng.sample([p for p in paths if p != path], rng.randint(0, 3))
        collection.add(FileRecord(
            path=path,
            local_checksum=None if rng.random() < 0.3 else "1" * 64,
            synced_checksum="1" * 64,
            synced_version="1.0",
            remote_checksum=rng.choice(["1" * 64, "2" * 64]),
            remote_version="1.0",
            remote_size=10,
            dependencies=[Dependency(dep, "1.0") for dep in sorted(deps)],
        ))
    return collection


@pytest.mark.parametrize("seed", range(8))
def test_plans_are_supersets_topological_and_deterministic(seed, tmp_path) -> None:
    collection = _random_collection(seed, tmp_path)
    requested = random.Random(seed + 100).sample(collection.paths(), 4)

    plan = DependencyResolver().resolve(requested, collection)
    again = DependencyResolver().resolve(list(reversed(requested)), collection)

    assert set(requested) <= set(plan.paths())
    assert plan.paths() == again.paths()
    assert plan.batches == again.batches
    for entry in plan:
        for dep in plan.dependencies_in_plan(entry.path):
            assert plan.entry(dep).batch <= entry.batch


def test_edges_are_listed_in_target_order(mirror, root) -> None:
    mirror.publish("b.py", b"b", "1.0")
    mirror.publish("a.py", b"a", "1.0")
    mirror.publish("app.py", b"app", "1.0", dependencies=[("b.py", "1.0"), ("a.py", "0.9")])
    collection = _sync(mirror, root)

    assert collection.edges_from("app.py") == [
        DependencyEdge("app.py", "a.py", "0.9"),
        DependencyEdge("app.py", "b.py", "1.0"),
    ]
    assert collection.edges_from("a.py") == []
    assert collection.edges_from("unknown.py") == []
