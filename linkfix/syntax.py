"""
Syntax arena — tree-sitter frontend for the refactoring engine.

tree-sitter trees are immutable, but every transformation we run needs to
mutate the program: names change, parameters are prepended, call sites
gain arguments.  So each file is parsed once and its file-scope
declarations are copied into a ``Program`` arena:

  • Decl   — one file-scope declarator (function or data object)
  • Param  — one parameter declaration of a function
  • Expr   — one reference to a name inside a declaration: a bare
             identifier, an address-of (``&name``) or a direct call
             (``name(...)``)

Records are addressed by integer handles (their index in the arena), so
the catalog and the dependency graph can key on identity while names
change underneath them.

Each Decl keeps the original bytes it was cut from; positions of the
name, the parameter list, every reference and every argument list are
offsets into those bytes.  ``linkfix.printer`` re-emits a declaration by
splicing the current state of the records into that text.
"""

import os
import logging
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union
from dataclasses import dataclass, field

import tree_sitter_c as tsc
from tree_sitter import Language, Parser, Node

from linkfix.errors import SourceIOError

logger = logging.getLogger(__name__)

C_LANGUAGE = Language(tsc.language())
_parser = Parser(C_LANGUAGE)

# Declaration kinds
FUNC = "func"
DATA = "data"

# Reference kinds
NAME = "name"
ADDR = "addr"
CALL = "call"

_PREPROC_CONTAINERS = {
    "preproc_ifdef", "preproc_if", "preproc_elif",
    "preproc_elifdef", "preproc_else",
}

_LIST_PUNCTUATION = {"(", ")", ",", "comment"}


# ═══════════════════════════════════════════════════════════════════════
#  Arena records
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Span:
    """Where a declaration came from.  Never changes after parsing."""
    file: str
    line: int             # 1-indexed
    column: int           # 1-indexed
    start_byte: int
    end_byte: int

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"


@dataclass
class Param:
    """A parameter declaration, e.g. ``Prog *p``."""
    text: str
    name_start: int = -1   # position of the name inside text, -1 if unnamed
    name_end: int = -1
    is_void: bool = False

    @property
    def name(self) -> str:
        if self.name_start < 0:
            return ""
        return self.text[self.name_start:self.name_end]

    def stripped(self) -> str:
        """The parameter with its name removed, as used in prototypes."""
        if self.name_start < 0:
            return self.text
        return (self.text[:self.name_start] + self.text[self.name_end:]).rstrip()

    @classmethod
    def new(cls, type_text: str, name: str) -> "Param":
        sep = "" if type_text.endswith(("*", " ")) else " "
        text = f"{type_text}{sep}{name}"
        return cls(text=text, name_start=len(text) - len(name), name_end=len(text))


@dataclass(eq=False)
class Decl:
    """A file-scope declaration tracked by handle."""
    id: int
    name: str
    kind: str                          # FUNC or DATA
    span: Span
    source: bytes                      # text the declaration was cut from
    name_range: Tuple[int, int]        # offsets into source
    original_name: str = ""
    storage: str = ""                  # "", "extern" or "static"
    original_storage: str = ""
    storage_range: Optional[Tuple[int, int]] = None
    has_body: bool = False
    has_init: bool = False
    is_enum: bool = False
    params: Optional[List[Param]] = None
    params_range: Optional[Tuple[int, int]] = None
    params_modified: bool = False
    header_end: int = 0                # end of the declarator, for prototypes
    exprs: List[int] = field(default_factory=list)
    locals: Set[str] = field(default_factory=set)   # parameter and block-scoped names

    @property
    def is_function(self) -> bool:
        return self.kind == FUNC

    @property
    def is_static(self) -> bool:
        return self.storage == "static"

    @property
    def is_definition(self) -> bool:
        """Function with a body, or data object that is not merely extern."""
        if self.is_enum:
            return False
        if self.kind == FUNC:
            return self.has_body
        return self.has_init or self.storage != "extern"

    def __repr__(self) -> str:
        return f"Decl({self.id}, {self.name!r}, {self.kind}, {self.span})"


@dataclass(eq=False)
class Expr:
    """A reference to a name inside a declaration."""
    id: int
    op: str                            # NAME, ADDR or CALL
    owner: int                         # handle of the enclosing Decl
    start: int                         # offsets into the owner's source
    end: int
    text: str = ""                     # NAME only: current spelling
    original: str = ""
    local: bool = False                # NAME only: shadowed by a local/param
    operand: Optional[int] = None      # ADDR/CALL: handle of the NAME expr
    args_start: int = -1               # CALL: offset just after "("
    has_args: bool = False
    prepend: List[str] = field(default_factory=list)

    def __repr__(self) -> str:
        label = self.text if self.op == NAME else f"#{self.operand}"
        return f"Expr({self.id}, {self.op}, {label!r})"


class Program:
    """Arena holding every parsed declaration and reference."""

    def __init__(self):
        self.decls: List[Decl] = []
        self.exprs: List[Expr] = []
        self.files: List[str] = []

    def decl(self, handle: int) -> Decl:
        return self.decls[handle]

    def expr(self, handle: int) -> Expr:
        return self.exprs[handle]

    def name_of(self, expr: Expr) -> Expr:
        """The NAME expression an ADDR or CALL refers through."""
        if expr.op == NAME:
            return expr
        return self.exprs[expr.operand]

    def references(self, decl: Decl, op: Optional[str] = None) -> Iterator[Expr]:
        for handle in decl.exprs:
            expr = self.exprs[handle]
            if op is None or expr.op == op:
                yield expr

    def walk(self, before: Callable, after: Optional[Callable] = None):
        """Paired before/after traversal: each Decl encloses its references."""
        for decl in self.decls:
            before(decl)
            for handle in decl.exprs:
                expr = self.exprs[handle]
                before(expr)
                if after is not None:
                    after(expr)
            if after is not None:
                after(decl)

    def preorder(self, visit: Callable):
        self.walk(visit)

    def declarations_in(self, path: str) -> List[Decl]:
        return [d for d in self.decls if d.span.file == path]


# ═══════════════════════════════════════════════════════════════════════
#  Tree helpers
# ═══════════════════════════════════════════════════════════════════════

def _node_text(node: Node, source: bytes) -> str:
    return source[node.start_byte:node.end_byte].decode("utf-8", errors="replace")


def _walk_type(node: Node, type_name: str):
    """Yield all descendant nodes of a given type."""
    cursor = node.walk()
    visited = False
    while True:
        if not visited and cursor.node.type == type_name:
            yield cursor.node
        if not visited and cursor.goto_first_child():
            visited = False
            continue
        if cursor.goto_next_sibling():
            visited = False
            continue
        if cursor.goto_parent():
            visited = True
            continue
        break


def _inner_declarator(node: Node) -> Optional[Node]:
    inner = node.child_by_field_name("declarator")
    if inner is None and node.type == "parenthesized_declarator":
        named = [c for c in node.named_children if c.type != "comment"]
        inner = named[0] if named else None
    return inner


def _declarator_chain(node: Optional[Node], leaf: str = "identifier") -> Tuple[Optional[Node], Optional[Node]]:
    """Follow nested declarators down to the declared name.

    Returns (name_node, direct_parent).  A declarator declares a function
    exactly when the direct parent of its name is a function_declarator;
    ``int (*fp)(void)`` puts a parenthesized declarator in between.
    """
    parent = None
    while node is not None:
        if node.type == leaf:
            return node, parent
        parent = node
        node = _inner_declarator(node)
    return None, None


def struct_fields(source: Union[str, bytes], struct_name: str) -> Set[str]:
    """Field names of ``struct <struct_name> { ... }`` defined in source."""
    if isinstance(source, str):
        source = source.encode("utf-8")
    tree = _parser.parse(source)
    fields: Set[str] = set()
    for node in _walk_type(tree.root_node, "struct_specifier"):
        name = node.child_by_field_name("name")
        body = node.child_by_field_name("body")
        if name is None or body is None or _node_text(name, source) != struct_name:
            continue
        for member in body.children:
            if member.type != "field_declaration":
                continue
            for d in member.children_by_field_name("declarator"):
                ident, _ = _declarator_chain(d, leaf="field_identifier")
                if ident is not None:
                    fields.add(_node_text(ident, source))
    return fields


# ═══════════════════════════════════════════════════════════════════════
#  Per-file indexing
# ═══════════════════════════════════════════════════════════════════════

class _Fragment:
    """Maps absolute byte offsets of a file onto one declaration's text.

    A declaration with several declarators (``int a, b = 1;``) is split
    into one Decl per declarator; each gets the shared specifiers plus its
    own declarator, so the fragment may have two segments.
    """

    def __init__(self, source: bytes, segments: List[Tuple[int, int]]):
        self.segments = segments
        self.text = b"".join(source[s:e] for s, e in segments)

    def rel(self, pos: int) -> int:
        offset = 0
        for start, end in self.segments:
            if start <= pos <= end:
                return offset + pos - start
            offset += end - start
        raise ValueError(f"offset {pos} lies outside the declaration")


class _FileIndexer:
    """Copies the file-scope declarations of one parsed file into the arena."""

    def __init__(self, program: Program, path: str, source: bytes):
        self.program = program
        self.path = path
        self.source = source

    def run(self, root: Node):
        for child in root.children:
            self._top_level(child)

    def _top_level(self, node: Node):
        t = node.type
        if t == "function_definition":
            self._function_definition(node)
        elif t == "declaration":
            self._declaration(node)
        elif t in ("type_definition", "enum_specifier"):
            self._enumerators_in(node)
        elif t in _PREPROC_CONTAINERS:
            for child in node.children:
                self._top_level(child)

    # ── declarations ──

    def _function_definition(self, node: Node):
        declarator = node.child_by_field_name("declarator")
        ident, fdecl = _declarator_chain(declarator)
        if ident is None or fdecl is None or fdecl.type != "function_declarator":
            logger.debug("%s:%d: skipping function without a plain name",
                         self.path, node.start_point[0] + 1)
            return
        frag = _Fragment(self.source, [(node.start_byte, node.end_byte)])
        decl = self._new_decl(node, frag, ident, FUNC)
        decl.has_body = True
        decl.header_end = frag.rel(declarator.end_byte)
        self._storage(decl, node, frag)
        self._params(decl, fdecl, frag)

        body = node.child_by_field_name("body")
        if body is not None:
            params = {p.name for p in decl.params if p.name}
            decl.locals |= params
            params = {p.name for p in decl.params if p.name}
            self._visit(decl, frag, body, [params])

    def _declaration(self, node: Node):
        type_node = node.child_by_field_name("type")
        if type_node is not None:
            self._enumerators_in(type_node)

        declarators = node.children_by_field_name("declarator")
        for i, d in enumerate(declarators):
            ident, parent = _declarator_chain(d)
            if ident is None:
                continue
            if i == 0:
                segments = [(node.start_byte, d.end_byte)]
            else:
                segments = [(node.start_byte, declarators[0].start_byte), (d.start_byte, d.end_byte)]
            frag = _Fragment(self.source, segments)

            is_func = parent is not None and parent.type == "function_declarator"
            decl = self._new_decl(node, frag, ident, FUNC if is_func else DATA)
            self._storage(decl, node, frag)
            if is_func:
                self._params(decl, parent, frag)
                decl.header_end = len(frag.text)
            else:
                decl.has_init = d.type == "init_declarator"
                self._declarator_exprs(decl, frag, d, [set()])

    def _enumerators_in(self, node: Node):
        for en in _walk_type(node, "enumerator"):
            ident = en.child_by_field_name("name")
            if ident is None:
                continue
            frag = _Fragment(self.source, [(en.start_byte, en.end_byte)])
            decl = self._new_decl(en, frag, ident, DATA)
            decl.is_enum = True
            value = en.child_by_field_name("value")
            if value is not None:
                decl.has_init = True
                self._visit(decl, frag, value, [set()])

    def _new_decl(self, node: Node, frag: _Fragment, ident: Node, kind: str) -> Decl:
        row, col = node.start_point[0], node.start_point[1]
        name = _node_text(ident, self.source)
        decl = Decl(
            id=len(self.program.decls),
            name=name,
            original_name=name,
            kind=kind,
            span=Span(self.path, row + 1, col + 1, node.start_byte, node.end_byte),
            source=frag.text,
            name_range=(frag.rel(ident.start_byte), frag.rel(ident.end_byte)),
        )
        self.program.decls.append(decl)
        return decl

    def _storage(self, decl: Decl, node: Node, frag: _Fragment):
        for child in node.children:
            if child.type != "storage_class_specifier":
                continue
            text = _node_text(child, self.source)
            if text in ("static", "extern"):
                decl.storage = decl.original_storage = text
                decl.storage_range = (frag.rel(child.start_byte), frag.rel(child.end_byte))
                return

    def _params(self, decl: Decl, fdecl: Node, frag: _Fragment):
        decl.params = []
        plist = fdecl.child_by_field_name("parameters")
        if plist is None:
            return
        decl.params_range = (frag.rel(plist.start_byte) + 1, frag.rel(plist.end_byte) - 1)
        for child in plist.children:
            if child.type in _LIST_PUNCTUATION:
                continue
            decl.params.append(self._param(child))

    def _param(self, node: Node) -> Param:
        raw = self.source[node.start_byte:node.end_byte]
        text = raw.decode("utf-8", errors="replace")
        if node.type == "identifier":
            return Param(text, 0, len(text))
        if node.type != "parameter_declaration":
            return Param(text)
        ident, _ = _declarator_chain(node.child_by_field_name("declarator"))
        if ident is None:
            return Param(text, is_void=text.strip() == "void")
        start = len(raw[:ident.start_byte - node.start_byte].decode("utf-8", errors="replace"))
        return Param(text, start, start + len(_node_text(ident, self.source)))

    # ── references ──

    def _declarator_exprs(self, decl: Decl, frag: _Fragment, node: Node, scopes: List[Set[str]]):
        """References in array sizes and initializers of a declarator."""
        while node is not None and node.type != "identifier":
            if node.type == "init_declarator":
                value = node.child_by_field_name("value")
                if value is not None:
                    self._visit(decl, frag, value, scopes)
            elif node.type == "array_declarator":
                size = node.child_by_field_name("size")
                if size is not None:
                    self._visit(decl, frag, size, scopes)
            elif node.type == "function_declarator":
                return
            node = _inner_declarator(node)

    def _local_declaration(self, decl: Decl, frag: _Fragment, node: Node, scopes: List[Set[str]]):
        is_extern = any(
            c.type == "storage_class_specifier" and _node_text(c, self.source) == "extern"
            for c in node.children
        )
        type_node = node.child_by_field_name("type")
        if type_node is not None:
            self._visit(decl, frag, type_node, scopes)
        for d in node.children_by_field_name("declarator"):
            ident, parent = _declarator_chain(d)
            # extern and prototype declarations inside a body name the global
            is_proto = parent is not None and parent.type == "function_declarator"
            if ident is not None and not is_extern and not is_proto:
                scopes[-1].add(_node_text(ident, self.source))
                decl.locals.add(_node_text(ident, self.source))
            self._declarator_exprs(decl, frag, d, scopes)

    def _visit(self, decl: Decl, frag: _Fragment, node: Node, scopes: List[Set[str]]):
        t = node.type
        if t == "identifier":
            self._name(decl, frag, node, scopes)
            return
        if t == "call_expression":
            fn = node.child_by_field_name("function")
            args = node.child_by_field_name("arguments")
            if fn is not None and fn.type == "identifier" and args is not None:
                callee = self._name(decl, frag, fn, scopes)
                call = self._new_expr(decl, CALL, frag.rel(node.start_byte), frag.rel(node.end_byte))
                call.operand = callee.id
                call.args_start = frag.rel(args.start_byte) + 1
                call.has_args = any(c.type not in _LIST_PUNCTUATION for c in args.children)
                self._visit(decl, frag, args, scopes)
                return
        elif t == "pointer_expression":
            op = node.child_by_field_name("operator")
            arg = node.child_by_field_name("argument")
            if op is not None and op.type == "&" and arg is not None and arg.type == "identifier":
                operand = self._name(decl, frag, arg, scopes)
                addr = self._new_expr(decl, ADDR, frag.rel(node.start_byte), frag.rel(node.end_byte))
                addr.operand = operand.id
                return
        elif t in ("compound_statement", "for_statement"):
            scopes = scopes + [set()]
        elif t == "declaration":
            self._local_declaration(decl, frag, node, scopes)
            return
        elif t == "enumerator":
            name = node.child_by_field_name("name")
            if name is not None:
                scopes[-1].add(_node_text(name, self.source))
                decl.locals.add(_node_text(name, self.source))
            value = node.child_by_field_name("value")
            if value is not None:
                self._visit(decl, frag, value, scopes)
            return
        elif t.startswith("preproc_"):
            # macro names in #ifdef / #define are not references
            for child in node.children:
                if child.type != "identifier":
                    self._visit(decl, frag, child, scopes)
            return
        for child in node.children:
            self._visit(decl, frag, child, scopes)

    def _name(self, decl: Decl, frag: _Fragment, node: Node, scopes: List[Set[str]]) -> Expr:
        text = _node_text(node, self.source)
        expr = self._new_expr(decl, NAME, frag.rel(node.start_byte), frag.rel(node.end_byte))
        expr.text = expr.original = text
        expr.local = any(text in scope for scope in scopes)
        return expr

    def _new_expr(self, decl: Decl, op: str, start: int, end: int) -> Expr:
        expr = Expr(id=len(self.program.exprs), op=op, owner=decl.id, start=start, end=end)
        self.program.exprs.append(expr)
        decl.exprs.append(expr.id)
        return expr


# ═══════════════════════════════════════════════════════════════════════
#  Entry points
# ═══════════════════════════════════════════════════════════════════════

def read_source(path: str) -> bytes:
    try:
        with open(path, "rb") as f:
            source = f.read()
    except OSError as e:
        raise SourceIOError(f"cannot read {path}: {e}", path) from e
    if b"\x00" in source[:8192]:
        raise SourceIOError(f"{path} looks like a binary file", path)
    return source


def parse_sources(sources: Dict[str, Union[str, bytes]]) -> Program:
    """Parse in-memory sources, keyed by path, into one Program.

    Files are indexed in sorted path order so handles are deterministic.
    """
    program = Program()
    for path in sorted(sources):
        source = sources[path]
        if isinstance(source, str):
            source = source.encode("utf-8")
        tree = _parser.parse(source)
        if tree.root_node.has_error:
            logger.warning("Parse errors in %s; indexing what tree-sitter recovered", path)
        _FileIndexer(program, path, source).run(tree.root_node)
        program.files.append(path)

    logger.info(
        "Parsed %d files: %d declarations, %d references",
        len(program.files), len(program.decls), len(program.exprs),
    )
    return program


def parse_program(paths: Iterable[str]) -> Program:
    """Read and parse every file in paths.  Unreadable files are fatal."""
    sources = {}
    for path in paths:
        sources[os.path.abspath(path)] = read_source(path)
    return parse_sources(sources)
