"""
Symbol Catalog and File Table.

The catalog maps the current name of every tracked file-scope
declaration to its arena handle, keeps the live symbols in program
order, and answers "is this a symbol we track" for a handle.  Names are
mutable; handles are not, so renaming moves catalog keys explicitly
instead of re-indexing.

The file table records, per source file, which tracked declarations
originate there and which tracked symbols are referenced from code in
that file.  The staticizer needs both to decide linkage.
"""

import logging
from typing import Dict, Iterator, List, Optional, Set, Tuple

from linkfix.errors import ConfigurationError
from linkfix.syntax import NAME, Decl, Expr, Program

logger = logging.getLogger(__name__)


class SymbolCatalog:
    """Name -> handle index with exactly one entry per name."""

    def __init__(self):
        self._by_name: Dict[str, int] = {}
        self.order: List[int] = []      # live symbols, program order
        self.members: Set[int] = set()

    def __len__(self) -> int:
        return len(self.order)

    def __contains__(self, handle: int) -> bool:
        return handle in self.members

    def __iter__(self) -> Iterator[int]:
        return iter(self.order)

    def add(self, decl: Decl):
        if decl.name in self._by_name:
            raise ValueError(f"symbol {decl.name!r} is already catalogued")
        self._by_name[decl.name] = decl.id
        self.order.append(decl.id)
        self.members.add(decl.id)

    def lookup(self, name: str) -> Optional[int]:
        return self._by_name.get(name)

    def require(self, name: str, role: str = "symbol") -> int:
        """Handle for name; a miss is a configuration error."""
        handle = self._by_name.get(name)
        if handle is None:
            raise ConfigurationError(f"{role} {name!r} not found", name)
        return handle

    def resolve(self, expr: Expr) -> Optional[int]:
        """Handle a NAME expression refers to, None for locals and library names."""
        if expr.op != NAME or expr.local:
            return None
        return self._by_name.get(expr.text)

    def names(self) -> Dict[str, int]:
        return dict(self._by_name)

    def rename_entries(self, moves: List[Tuple[int, str, str]]):
        """Move catalog keys for (handle, old, new) triples in one step.

        All old keys are dropped before any new key is inserted, so
        swapping two names works.
        """
        for handle, old, _ in moves:
            if self._by_name.get(old) == handle:
                del self._by_name[old]
        for handle, _, new in moves:
            self._by_name[new] = handle

    def retain(self, subset: Set[int]):
        self.order = [h for h in self.order if h in subset]
        self.members = set(self.order)
        for name in [n for n, h in self._by_name.items() if h not in subset]:
            del self._by_name[name]


def _rank(decl: Decl) -> int:
    """Prefer definitions with a body or initializer over tentative ones over prototypes."""
    if decl.is_definition and (decl.has_body or decl.has_init):
        return 2
    if decl.is_definition:
        return 1
    return 0


def index_symbols(program: Program) -> SymbolCatalog:
    """Catalog every file-scope declaration of program.

    The arena only holds file-scope declarations; locals never become
    Decl records.  When a name is declared several times (prototype in a
    header plus the definition), the definition is tracked.
    """
    winners: Dict[str, Decl] = {}
    for decl in program.decls:
        current = winners.get(decl.name)
        if current is None or _rank(decl) > _rank(current):
            winners[decl.name] = decl
        elif decl.has_body and current.has_body:
            logger.warning("%s: %s is also defined at %s; keeping the first",
                           decl.span, decl.name, current.span)

    catalog = SymbolCatalog()
    for decl in program.decls:
        if winners.get(decl.name) is decl:
            catalog.add(decl)

    logger.info(
        "SymbolCatalog: %d symbols from %d declarations",
        len(catalog), len(program.decls),
    )
    return catalog


class FileTable:
    """Per-file sets of declared and referenced symbols."""

    def __init__(self):
        self.declared: Dict[str, Set[int]] = {}
        # file -> referenced symbol -> declarations in that file referencing it
        self._refs: Dict[str, Dict[int, Set[int]]] = {}

    @property
    def referenced(self) -> Dict[str, Set[int]]:
        return {path: set(targets) for path, targets in self._refs.items()}

    def add_file(self, path: str):
        self.declared.setdefault(path, set())
        self._refs.setdefault(path, {})

    def add_declared(self, path: str, handle: int):
        self.declared.setdefault(path, set()).add(handle)

    def add_reference(self, path: str, user: int, target: int):
        self._refs.setdefault(path, {}).setdefault(target, set()).add(user)

    def files_referencing(self, handle: int) -> Set[str]:
        return {path for path, targets in self._refs.items() if handle in targets}

    def record(self, program: Program, catalog: SymbolCatalog, handle: int):
        """(Re)record the references made by one tracked declaration."""
        self.forget(handle)
        decl = program.decl(handle)
        for expr in program.references(decl, NAME):
            target = catalog.resolve(expr)
            if target is not None:
                self.add_reference(decl.span.file, handle, target)

    def forget(self, user: int):
        for targets in self._refs.values():
            for target in [t for t, users in targets.items() if user in users]:
                targets[target].discard(user)
                if not targets[target]:
                    del targets[target]

    def retain(self, subset: Set[int]):
        for path in self.declared:
            self.declared[path] &= subset
        for targets in self._refs.values():
            for target in list(targets):
                users = targets[target] & subset
                if target in subset and users:
                    targets[target] = users
                else:
                    del targets[target]


def build_file_table(program: Program, catalog: SymbolCatalog) -> FileTable:
    """Record where each tracked symbol is declared and referenced.

    Unlike the dependency graph, references from file-scope initializers
    count here: a function stored in a table in another file cannot
    become static.
    """
    files = FileTable()
    for path in program.files:
        files.add_file(path)

    current: Optional[Decl] = None

    def visit(x):
        nonlocal current
        if isinstance(x, Decl):
            current = x if x.id in catalog else None
            if current is not None:
                files.add_declared(x.span.file, x.id)
            return
        if current is None or x.op != NAME:
            return
        target = catalog.resolve(x)
        if target is not None:
            files.add_reference(current.span.file, current.id, target)

    program.preorder(visit)
    return files
