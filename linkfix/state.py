"""The program being refactored together with the indexes built over it."""

import logging
from dataclasses import dataclass
from typing import Dict, List

from linkfix.depgraph import DependencyGraph, build_graph
from linkfix.symbols import FileTable, SymbolCatalog, build_file_table, index_symbols
from linkfix.syntax import Decl, Program

logger = logging.getLogger(__name__)


@dataclass
class RefactorState:
    """Arena plus catalog, dependency graph and file table.

    Every transformation takes the state explicitly and keeps the three
    indexes consistent with the arena before it returns.
    """
    program: Program
    catalog: SymbolCatalog
    graph: DependencyGraph
    files: FileTable

    @classmethod
    def build(cls, program: Program) -> "RefactorState":
        catalog = index_symbols(program)
        graph = build_graph(program, catalog)
        files = build_file_table(program, catalog)
        return cls(program=program, catalog=catalog, graph=graph, files=files)

    def symbols(self) -> List[Decl]:
        """Live declarations in program order."""
        return [self.program.decl(h) for h in self.catalog.order]

    def decl_named(self, name: str) -> Decl:
        return self.program.decl(self.catalog.require(name))

    def refresh(self, handle: int):
        """Re-derive the edges and file references of one rewritten declaration."""
        self.graph.refresh(self.program, self.catalog, handle)
        self.files.record(self.program, self.catalog, handle)

    def summary(self) -> Dict[str, int]:
        return {
            "files": len(self.program.files),
            "declarations": len(self.program.decls),
            "symbols": len(self.catalog),
            "functions": sum(1 for d in self.symbols() if d.is_function and d.has_body),
            "edges": self.graph.total_edges,
        }
