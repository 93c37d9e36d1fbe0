"""
Graph runner — sugar over nodnod.

Nodes are declared with ``@node`` and a ``__compose__`` classmethod whose
parameter types name their dependencies. ``compose(Target, *inputs)``
discovers the dependency graph from the target, injects the inputs by
their runtime type and returns the resolved target node.
"""

from __future__ import annotations

from typing import Any, cast
from collections.abc import Callable, Coroutine

from nodnod import EventLoopAgent, Node, Scope, Value
from nodnod import scalar_node as node


async def compose[T](target: type[T], *inputs: object) -> T:
    """
    One-shot composition.

    Example:
        result = await compose(FinalResultNode, spec)
    """
    agent = EventLoopAgent.build({cast(type[Node[Any, Any]], target)})

    scope = Scope(detail="compose")
    async with scope:
        for value in inputs:
            scope.push(Value(type(value), value))

        run = cast(
            Callable[[Scope, dict[type[Any], Scope]], Coroutine[Any, Any, None]],
            getattr(agent, "run"),
        )
        await run(scope, {})

        resolved = scope.get(target)
        if resolved is None:
            raise KeyError(f"{target.__name__} not resolved")
        return cast(T, resolved.value)


__all__ = ("node", "compose")
