"""
Deduplicating, multi-root topological ordering

Depth-first post-order over `parents_of`, with the visited set keyed by
identity and shared between roots. Parents are emitted strictly before
their children and every vertex appears exactly once.
"""

from __future__ import annotations

from typing import Callable, Hashable, Iterable, TypeVar

V = TypeVar("V", bound=Hashable)


def topological_sort(roots: Iterable[V], parents_of: Callable[[V], Iterable[V]]) -> list[V]:
    visited: set[V] = set()
    order: list[V] = []
    for root in roots:
        if root in visited:
            continue
        visited.add(root)
        stack = [(root, iter(parents_of(root)))]
        while stack:  # NOTE: explicit stack, deep graphs would hit the recursion limit
            vertex, pending_parents = stack[-1]
            for parent in pending_parents:
                if parent not in visited:
                    visited.add(parent)
                    stack.append((parent, iter(parents_of(parent))))
                    break
            else:
                stack.pop()
                order.append(vertex)
    return deduplicate(order)


def deduplicate(order: Iterable[V]) -> list[V]:
    """Stable de-duplication; keeps the first occurrence of each vertex"""
    seen: set[V] = set()
    return [v for v in order if not (v in seen or seen.add(v))]
