from __future__ import annotations

import abc
import typing as t
from collections import deque
from dataclasses import dataclass, replace

T = t.TypeVar("T")
E = t.TypeVar("E")
L = t.TypeVar("L")


class CycleError(Exception):
    def __init__(self, path: t.Sequence[object]) -> None:
        super().__init__(" -> ".join(str(node) for node in path))
        self.path = path


@dataclass(frozen=True, kw_only=True)
class TraverseScope(t.Generic[T, E]):
    node: T
    entered: E
    parent: t.Optional[TraverseScope[T, E]]

    def path(self) -> t.Sequence[T]:
        nodes = list[T]()
        scope: t.Optional[TraverseScope[T, E]] = self
        while scope is not None:
            nodes.append(scope.node)
            scope = scope.parent

        return nodes[::-1]


@dataclass(frozen=True, kw_only=True)
class TraverseContext(t.Generic[T, E]):
    node: T
    parent: t.Optional[TraverseScope[T, E]] = None
    entered: bool = False


class TraverseStrategy(t.Generic[T, E, L], metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def filter(self, node: T, parent: t.Optional[TraverseScope[T, E]]) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def enter(self, node: T, parent: t.Optional[TraverseScope[T, E]]) -> E:
        raise NotImplementedError

    @abc.abstractmethod
    def descendants(self, node: T, entered: E, parent: t.Optional[TraverseScope[T, E]]) -> t.Iterable[T]:
        raise NotImplementedError

    @abc.abstractmethod
    def leave(self, node: T, entered: E, parent: t.Optional[TraverseScope[T, E]]) -> L:
        raise NotImplementedError


class DfsPostOrderTraversal(t.Generic[T, E, L]):
    """
    Depth first traversal that yields each node after all of its descendants.

    Nodes are visited once, in the order they are given and then in the order `descendants` returns them. A node
    that is reached again while it is still being entered (i.e. it is its own ancestor) raises :class:`CycleError`.
    """

    def __init__(self, strategy: TraverseStrategy[T, E, L]) -> None:
        self.__strategy = strategy

    def traverse(self, *nodes: T) -> t.Iterable[L]:
        processed = set[T]()
        scopes = dict[T, TraverseScope[T, E]]()

        stack = deque[TraverseContext[T, E]](
            TraverseContext(node=node) for node in reversed(nodes) if self.__strategy.filter(node, None)
        )

        while stack:
            context = stack.pop()
            if context.node in processed:
                continue

            if context.entered:
                scope = scopes.pop(context.node)
                left = self.__strategy.leave(scope.node, scope.entered, scope.parent)
                processed.add(context.node)

                yield left

            else:
                entered = self.__strategy.enter(context.node, context.parent)
                scope = scopes[context.node] = TraverseScope(node=context.node, entered=entered, parent=context.parent)
                stack.append(replace(context, entered=True))

                descendants = list[TraverseContext[T, E]]()
                for descendant in self.__strategy.descendants(context.node, entered, context.parent):
                    if descendant in scopes:
                        raise CycleError([*scope.path(), descendant])

                    if descendant not in processed and self.__strategy.filter(descendant, scope):
                        descendants.append(TraverseContext(node=descendant, parent=scope))

                stack.extend(reversed(descendants))


class EnterStrategy(t.Generic[T, E], TraverseStrategy[T, E, E]):
    def __init__(
        self,
        enter: t.Callable[[T], E],
        descendants: t.Callable[[E], t.Iterable[T]],
        predicate: t.Optional[t.Callable[[T], bool]],
    ) -> None:
        self.__enter = enter
        self.__descendants = descendants
        self.__predicate = predicate

    def filter(self, node: T, parent: t.Optional[TraverseScope[T, E]]) -> bool:
        return self.__predicate(node) if self.__predicate is not None else True

    def enter(self, node: T, parent: t.Optional[TraverseScope[T, E]]) -> E:
        return self.__enter(node)

    def descendants(self, node: T, entered: E, parent: t.Optional[TraverseScope[T, E]]) -> t.Iterable[T]:
        return self.__descendants(entered)

    def leave(self, node: T, entered: E, parent: t.Optional[TraverseScope[T, E]]) -> E:
        return entered


def traverse_dfs_post_order(
    nodes: t.Sequence[T],
    descendants: t.Callable[[T], t.Iterable[T]],
    predicate: t.Optional[t.Callable[[T], bool]] = None,
) -> t.Iterable[T]:
    return DfsPostOrderTraversal(EnterStrategy(lambda node: node, descendants, predicate)).traverse(*nodes)


def traverse_dfs_post_order_map(
    nodes: t.Sequence[T],
    transform: t.Callable[[T], E],
    descendants: t.Callable[[E], t.Iterable[T]],
    predicate: t.Optional[t.Callable[[T], bool]] = None,
) -> t.Iterable[E]:
    return DfsPostOrderTraversal(EnterStrategy(transform, descendants, predicate)).traverse(*nodes)
