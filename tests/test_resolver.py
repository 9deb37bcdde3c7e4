"""Install ordering, cycle and unknown-dependency detection."""

from __future__ import annotations

import random

import pytest

from kiln.descriptor import Descriptor
from kiln.errors import CyclicDependency, UnknownDependency
from kiln.resolver import Resolver, dependency_graph, resolve, runtime_closure, to_dot

from helpers import registry_of

DIGEST = "0" * 64


def d(name, build=(), runtime=()):
    return Descriptor(name=name, source_url=f"{name}.tar.gz", checksum=DIGEST,
                      build_deps=tuple(build), runtime_deps=tuple(runtime))


def names(order):
    return [x.name for x in order]


def test_dependencies_come_first():
    reg = registry_of(
        d("modsecurity", build=["pkg-config", "libtool"], runtime=["yajl", "pcre2"]),
        d("libtool", runtime=["m4"]),
        d("m4"), d("pkg-config"), d("yajl"), d("pcre2"),
    )
    assert names(resolve("modsecurity", reg)) == ["pkg-config", "m4", "libtool", "yajl", "pcre2", "modsecurity"]


def test_diamond_appears_once():
    reg = registry_of(d("app", runtime=["left", "right"]), d("left", runtime=["base"]),
                      d("right", runtime=["base"]), d("base"))
    order = names(resolve("app", reg))
    assert order.count("base") == 1
    assert order[0] == "base" and order[-1] == "app"


def test_cycle_names_its_members():
    reg = registry_of(d("a", runtime=["b"]), d("b", build=["c"]), d("c", runtime=["a"]), d("x", runtime=["a"]))
    with pytest.raises(CyclicDependency) as ei:
        resolve("x", reg)
    assert ei.value.cycle == ["a", "b", "c", "a"]
    assert ei.value.EXIT_STATUS == 1


def test_unknown_dependency_names_requirer():
    reg = registry_of(d("app", runtime=["lib"]), d("lib", build=["ghost"]))
    with pytest.raises(UnknownDependency) as ei:
        resolve("app", reg)
    assert ei.value.missing == "ghost"
    assert ei.value.required_by == "lib"


def test_unknown_target():
    with pytest.raises(UnknownDependency) as ei:
        resolve("nope", registry_of(d("a")))
    assert ei.value.required_by is None


def test_runtime_closure_ignores_build_edges():
    reg = registry_of(d("app", build=["cmake"], runtime=["zlib"]), d("cmake", runtime=["curl"]),
                      d("curl"), d("zlib"))
    assert names(runtime_closure("app", reg)) == ["zlib", "app"]
    assert dependency_graph("app", reg)["app"] == {"cmake", "zlib"}


def test_to_dot_marks_build_edges():
    reg = registry_of(d("app", build=["cmake"], runtime=["zlib"]), d("cmake"), d("zlib"))
    dot = to_dot(resolve("app", reg))
    assert '"app" -> "cmake" [style=dashed];' in dot
    assert '"app" -> "zlib";' in dot


@pytest.mark.parametrize("seed", range(8))
def test_random_dags_respect_every_edge(seed):
    rng = random.Random(seed)
    count = 25
    descs = []
    for i in range(count):
        lower = [f"n{j}" for j in range(i)]
        picks = rng.sample(lower, k=min(len(lower), rng.randint(0, 4)))
        split = rng.randint(0, len(picks))
        descs.append(d(f"n{i}", build=picks[:split], runtime=picks[split:]))
    reg = registry_of(*descs)
    resolver = Resolver(reg)
    graph = {x.name: set(x.dependencies) for x in descs}

    for target in reg:
        order = names(resolver.resolve(target))
        pos = {n: i for i, n in enumerate(order)}
        assert len(order) == len(pos)
        assert order[-1] == target
        for n in order:
            for dep in graph[n]:
                assert pos[dep] < pos[n]
        # the order is exactly the reachable set
        reach, stack = set(), [target]
        while stack:
            cur = stack.pop()
            if cur not in reach:
                reach.add(cur)
                stack.extend(graph[cur])
        assert set(order) == reach


def test_resolution_is_deterministic():
    reg = registry_of(d("app", runtime=["c", "a", "b"]), d("a"), d("b"), d("c"))
    assert names(resolve("app", reg)) == ["c", "a", "b", "app"]
    assert names(resolve("app", reg)) == names(resolve("app", reg))


def test_deep_chain_does_not_hit_recursion_limit():
    depth = 5000
    chain = [d(f"n{i}", runtime=[f"n{i + 1}"] if i + 1 < depth else []) for i in range(depth)]
    order = names(resolve("n0", registry_of(*chain)))
    assert order == [f"n{i}" for i in reversed(range(depth))]


def test_deep_cycle_is_reported():
    depth = 3000
    chain = [d(f"n{i}", build=[f"n{(i + 1) % depth}"]) for i in range(depth)]
    with pytest.raises(CyclicDependency) as ei:
        resolve("n0", registry_of(*chain))
    assert ei.value.cycle[0] == ei.value.cycle[-1] == "n0"
    assert len(ei.value.cycle) == depth + 1
