"""
Dependency Graph — "uses" / "used-by" relations between tracked symbols.

``forward[f]`` holds the symbols f's body references (by name, by address
or by direct call); ``reverse[s]`` holds the functions referencing s.
Edges are only added or removed through methods that update both sides,
so ``reverse`` stays the transpose of ``forward``.

References made outside function bodies (file-scope initializers) are
not dependency sources.  Names that resolve to no tracked symbol are
library calls and are ignored.
"""

import logging
from typing import Dict, Iterator, Optional, Set, Tuple, Union

from linkfix.symbols import SymbolCatalog
from linkfix.syntax import Decl, Expr, Program

logger = logging.getLogger(__name__)


class DependencyGraph:
    """Symmetric forward/reverse edge sets keyed by handle."""

    def __init__(self):
        self.forward: Dict[int, Set[int]] = {}
        self.reverse: Dict[int, Set[int]] = {}

    def add_node(self, handle: int):
        self.forward.setdefault(handle, set())
        self.reverse.setdefault(handle, set())

    def add_edge(self, user: int, used: int):
        self.add_node(user)
        self.add_node(used)
        self.forward[user].add(used)
        self.reverse[used].add(user)

    def remove_edge(self, user: int, used: int):
        self.forward.get(user, set()).discard(used)
        self.reverse.get(used, set()).discard(user)

    def uses(self, handle: int) -> Set[int]:
        return self.forward.get(handle, set())

    def used_by(self, handle: int) -> Set[int]:
        return self.reverse.get(handle, set())

    def edges(self) -> Iterator[Tuple[int, int]]:
        for user, targets in self.forward.items():
            for used in targets:
                yield user, used

    @property
    def total_edges(self) -> int:
        return sum(len(v) for v in self.forward.values())

    def is_symmetric(self) -> bool:
        for user, used in self.edges():
            if user not in self.reverse.get(used, set()):
                return False
        for used, users in self.reverse.items():
            for user in users:
                if used not in self.forward.get(user, set()):
                    return False
        return True

    def retain(self, subset: Set[int]):
        """Drop every node outside subset and every edge touching one."""
        for table in (self.forward, self.reverse):
            for handle in list(table):
                if handle not in subset:
                    del table[handle]
                    continue
                table[handle] &= subset

    def refresh(self, program: Program, catalog: SymbolCatalog, handle: int):
        """Recompute the outgoing edges of one function after a rewrite."""
        for used in list(self.forward.get(handle, set())):
            self.remove_edge(handle, used)
        decl = program.decl(handle)
        if not (decl.is_function and decl.has_body):
            return
        for expr in program.references(decl):
            target = reference_target(program, catalog, expr)
            if target is not None:
                self.add_edge(handle, target)


def reference_target(program: Program, catalog: SymbolCatalog, expr: Expr) -> Optional[int]:
    """Tracked symbol a NAME, ADDR or CALL expression refers to."""
    return catalog.resolve(program.name_of(expr))


def build_graph(program: Program, catalog: SymbolCatalog) -> DependencyGraph:
    """One walk over the program, tracking the enclosing function body."""
    graph = DependencyGraph()
    for handle in catalog.order:
        graph.add_node(handle)

    curfunc: Optional[int] = None

    def before(x: Union[Decl, Expr]):
        nonlocal curfunc
        if isinstance(x, Decl):
            if x.id in catalog and x.is_function and x.has_body:
                curfunc = x.id
            return
        if curfunc is None:
            return
        target = reference_target(program, catalog, x)
        if target is not None:
            graph.add_edge(curfunc, target)

    def after(x: Union[Decl, Expr]):
        nonlocal curfunc
        if isinstance(x, Decl) and x.id == curfunc:
            curfunc = None

    program.walk(before, after)
    logger.info(
        "DependencyGraph: %d symbols, %d edges",
        len(graph.forward), graph.total_edges,
    )
    return graph
