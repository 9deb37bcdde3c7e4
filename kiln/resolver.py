# kiln/resolver.py
"""
resolver.py - dependency ordering for kiln

Features:
- Depth-first topological sort over build + runtime edges (dependencies first)
- Deterministic ties: build deps before runtime deps, each in declared order
- Cycle detection naming the full cycle (a -> b -> a)
- Unknown names reported together with the descriptor that required them
- Runtime-only closure (used for the verification environment)
- Derived dependency graph and Graphviz DOT export
"""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Set

from kiln.descriptor import Descriptor
from kiln.errors import CyclicDependency, UnknownDependency
from kiln.logging import get_logger

logger = get_logger("resolver")

# DFS node states
_NEW, _ACTIVE, _DONE = 0, 1, 2


class Resolver:
    """
    Orders descriptors of a read-only registry. A Resolver never mutates the
    registry; a run resolves once and then schedules from the returned order.
    """

    def __init__(self, registry: Mapping[str, Descriptor]):
        self.registry = registry

    def _lookup(self, name: str, required_by: Optional[str]) -> Descriptor:
        desc = self.registry.get(name)
        if desc is None:
            raise UnknownDependency(name, required_by)
        return desc

    def _edges(self, desc: Descriptor, runtime_only: bool) -> tuple:
        return desc.runtime_deps if runtime_only else desc.dependencies

    def _order(self, target: str, runtime_only: bool) -> List[Descriptor]:
        state: Dict[str, int] = {}
        path: List[str] = []
        result: List[Descriptor] = []

        def enter(name: str, required_by: Optional[str]):
            st = state.get(name, _NEW)
            if st == _DONE:
                return None
            if st == _ACTIVE:
                cycle = path[path.index(name):] + [name]
                raise CyclicDependency(cycle)
            desc = self._lookup(name, required_by)
            state[name] = _ACTIVE
            path.append(name)
            return desc, iter(self._edges(desc, runtime_only))

        # explicit stack, chains can be deeper than the recursion limit
        stack = [enter(target, None)]
        while stack:
            desc, deps = stack[-1]
            for dep in deps:
                frame = enter(dep, desc.name)
                if frame is not None:
                    stack.append(frame)
                    break
            else:
                stack.pop()
                path.pop()
                state[desc.name] = _DONE
                result.append(desc)
        return result

    def resolve(self, target: str) -> List[Descriptor]:
        """
        Install order for `target`: every reachable descriptor exactly once,
        each one after all of its (build and runtime) dependencies.
        """
        order = self._order(target, runtime_only=False)
        logger.info("resolved %s: %s", target, " ".join(d.name for d in order))
        return order

    def runtime_closure(self, target: str) -> List[Descriptor]:
        """Descriptors reachable from `target` through runtime edges only (target last)."""
        return self._order(target, runtime_only=True)

    def dependency_graph(self, target: str) -> Dict[str, Set[str]]:
        return {d.name: set(d.dependencies) for d in self.resolve(target)}

    def dependents(self, order: List[Descriptor]) -> Dict[str, List[str]]:
        """Reverse edges restricted to `order`: name -> names that depend on it, in order."""
        out: Dict[str, List[str]] = {d.name: [] for d in order}
        for d in order:
            for dep in d.dependencies:
                if dep in out:
                    out[dep].append(d.name)
        return out


def to_dot(order: List[Descriptor]) -> str:
    """Graphviz DOT text for a resolved order. Runtime edges solid, build-only edges dashed."""
    lines = ["digraph deps {"]
    for d in order:
        label = f"{d.name}\\n{d.version}"
        lines.append(f'  "{d.name}" [label="{label}"];')
    for d in order:
        for dep in d.dependencies:
            style = "" if dep in d.runtime_deps else " [style=dashed]"
            lines.append(f'  "{d.name}" -> "{dep}"{style};')
    lines.append("}")
    return "\n".join(lines) + "\n"

# -----------------------
# Module-level helpers
# -----------------------
def resolve(target: str, registry: Mapping[str, Descriptor]) -> List[Descriptor]:
    return Resolver(registry).resolve(target)

def runtime_closure(target: str, registry: Mapping[str, Descriptor]) -> List[Descriptor]:
    return Resolver(registry).runtime_closure(target)

def dependency_graph(target: str, registry: Mapping[str, Descriptor]) -> Dict[str, Set[str]]:
    return Resolver(registry).dependency_graph(target)
