"""
Reachability Extractor.

Computes the symbols reachable from a set of entry points over forward
edges and trims every index down to them.  Later stages read the
catalog, the graph and the file table directly, so all of them are
filtered here rather than lazily.
"""

import logging
from typing import Iterable, Set

from linkfix.depgraph import DependencyGraph
from linkfix.state import RefactorState

logger = logging.getLogger(__name__)


def reachable(graph: DependencyGraph, roots: Iterable[int]) -> Set[int]:
    """Depth-first closure over forward edges.  Cycles are fine."""
    seen: Set[int] = set()
    stack = list(roots)
    while stack:
        handle = stack.pop()
        if handle in seen:
            continue
        seen.add(handle)
        stack.extend(graph.uses(handle) - seen)
    return seen


def trim(state: RefactorState, subset: Set[int]):
    """Keep only symbols in subset, in every index."""
    state.catalog.retain(subset)
    state.graph.retain(subset)
    state.files.retain(subset)


def extract(state: RefactorState, start: Iterable[str]) -> Set[int]:
    """Prune state to what the start symbols transitively use.

    Every start name must resolve; a missing one aborts the run.
    Returns the kept handles.
    """
    roots = [state.catalog.require(name, "start symbol") for name in sorted(set(start))]
    subset = reachable(state.graph, roots)
    before = len(state.catalog)
    trim(state, subset)
    logger.info(
        "Extracted %d of %d symbols reachable from %s",
        len(state.catalog), before, ", ".join(sorted(set(start))),
    )
    return subset
