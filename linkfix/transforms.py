"""
Program transformations: rename, static-ize, thread a parameter, strip
legacy sentinels.

Each transformation mutates the arena in place and leaves the catalog,
the dependency graph and the file table consistent with it.  Symbols
named by the configuration must exist; a miss raises
ConfigurationError and the run stops.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from linkfix.config import ThreadingSpec
from linkfix.depgraph import reference_target
from linkfix.errors import ConfigurationError
from linkfix.rewrite import RewriteRule, apply_rules
from linkfix.state import RefactorState
from linkfix.syntax import CALL, Param

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
#  Rename
# ═══════════════════════════════════════════════════════════════════════

def rename(state: RefactorState, mapping: Dict[str, str]) -> List[int]:
    """Rename symbols program-wide.  Returns the renamed handles."""
    program, catalog = state.program, state.catalog
    if not mapping:
        return []

    handles = {old: catalog.require(old, "rename target") for old in sorted(mapping)}
    if len(set(mapping.values())) != len(mapping):
        raise ConfigurationError("two symbols are renamed to the same name")
    renamed = set(handles.values())
    for old, new in sorted(mapping.items()):
        holder = catalog.lookup(new)
        if holder is not None and holder not in renamed:
            raise ConfigurationError(f"cannot rename {old!r}: {new!r} is already taken", new)
    _check_shadowing(state, handles, mapping)

    # Declarations first: each handle is renamed exactly once.
    moves = []
    for old, handle in handles.items():
        decl = program.decl(handle)
        decl.name = mapping[old]
        moves.append((handle, old, decl.name))
        logger.debug("rename %s -> %s (%s)", old, decl.name, decl.span)
    catalog.rename_entries(moves)

    # References carry their own copy of the name.
    rules = [RewriteRule(old, new) for old, new in sorted(mapping.items())]
    result = apply_rules(program, catalog, rules)
    logger.info("Renamed %d symbols, %d references", len(moves), result.rewritten)
    return [handle for handle, _, _ in moves]


def _check_shadowing(state: RefactorState, handles: Dict[str, int], mapping: Dict[str, str]):
    """A renamed reference must not be captured by a local of the same new name."""
    program, catalog = state.program, state.catalog
    targets = {handle: mapping[old] for old, handle in handles.items()}
    for expr in program.exprs:
        if expr.owner not in catalog:
            continue
        target = catalog.resolve(expr)
        if target not in targets:
            continue
        owner = program.decl(expr.owner)
        if targets[target] in owner.locals:
            raise ConfigurationError(
                f"cannot rename {expr.text!r} to {targets[target]!r}: "
                f"{owner.name} ({owner.span}) declares a local of that name",
                targets[target],
            )


# ═══════════════════════════════════════════════════════════════════════
#  Static-ize
# ═══════════════════════════════════════════════════════════════════════

def make_static(state: RefactorState, start: Iterable[str], router) -> List[int]:
    """Give file-local linkage to every symbol used only within its destination file.

    router maps a source file to its destination file.  Start symbols are
    the public entry points and keep external linkage.
    """
    exempt = set(start)
    made: List[int] = []
    for decl in state.symbols():
        if decl.is_static or not decl.is_definition or decl.name in exempt:
            continue
        dest = router.route(decl.span.file)
        foreign = sorted(f for f in state.files.files_referencing(decl.id)
                         if router.route(f) != dest)
        if foreign:
            logger.debug("%s stays extern: used from %s", decl.name, ", ".join(foreign))
            continue
        decl.storage = "static"
        made.append(decl.id)
    logger.info("Made %d symbols static", len(made))
    return made


# ═══════════════════════════════════════════════════════════════════════
#  Parameter threading
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ThreadingResult:
    functions: List[int] = field(default_factory=list)
    call_sites: int = 0
    references: int = 0


def thread_parameter(state: RefactorState, spec: ThreadingSpec,
                     field_names: Optional[Set[str]] = None) -> ThreadingResult:
    """Add spec's parameter to every function needing it.

    A function needs the parameter when its body references a seed
    global, or when it calls a function that needs it.  Exempt functions
    never get it and do not pass the need on to their callers.

    field_names are struct fields (see ``struct_header``): tracked
    globals with those names become seeds too, without being required.
    """
    program, catalog, graph = state.program, state.catalog, state.graph

    seeds: Dict[int, str] = {}
    for name in sorted(spec.seeds):
        seeds[catalog.require(name, "threading seed")] = spec.accessor(name)
    for name in sorted(field_names or ()):
        handle = catalog.lookup(name)
        if handle is not None and handle not in seeds:
            seeds[handle] = spec.accessor(name)
    exempt = {catalog.require(name, "threading exemption") for name in spec.exempt}

    closure: Set[int] = set()
    work = [user for seed in seeds for user in graph.used_by(seed)]
    while work:
        handle = work.pop()
        if handle in closure or handle in exempt:
            continue
        closure.add(handle)
        work.extend(graph.used_by(handle) - closure)

    result = ThreadingResult(functions=sorted(closure))
    if not closure:
        logger.info("%s: no function needs %s", spec.stage_label, spec.name)
        return result

    for handle in result.functions:
        decl = program.decl(handle)
        if spec.name in decl.locals:
            raise ConfigurationError(
                f"{spec.stage_label}: {decl.name} ({decl.span}) already declares {spec.name!r}",
                spec.name,
            )

    # Definitions: the new parameter goes first; (void) is replaced.
    for handle in result.functions:
        decl = program.decl(handle)
        decl.locals.add(spec.name)
        param = Param.new(spec.type, spec.name)
        if not decl.params or (len(decl.params) == 1 and decl.params[0].is_void):
            decl.params = [param]
        else:
            decl.params.insert(0, param)
        decl.params_modified = True

    # Call sites of every function that now takes the parameter.
    for expr in program.exprs:
        if expr.op != CALL or expr.owner not in catalog:
            continue
        if reference_target(program, catalog, expr) in closure:
            expr.prepend.insert(0, spec.name)
            result.call_sites += 1

    # References to the seeds inside the affected bodies.
    scope = frozenset(closure)
    rules = [
        RewriteRule(program.decl(handle).name, accessor, target=handle, scope=scope)
        for handle, accessor in seeds.items()
    ]
    rewrite = apply_rules(program, catalog, rules)
    result.references = rewrite.rewritten
    for owner in rewrite.owners:
        state.refresh(owner)

    logger.info(
        "%s: %d functions take %s, %d call sites patched, %d references rewritten",
        spec.stage_label, len(closure), spec.name, result.call_sites, result.references,
    )
    return result


# ═══════════════════════════════════════════════════════════════════════
#  Legacy sentinels
# ═══════════════════════════════════════════════════════════════════════

def strip_sentinels(state: RefactorState, pairs: Dict[str, str]) -> int:
    """Replace references to sentinel symbols (e.g. P, S) with plain text (e.g. nil)."""
    program, catalog = state.program, state.catalog
    rules = []
    for name, replacement in sorted(pairs.items()):
        handle = catalog.lookup(name)
        if handle is None:
            logger.warning("Sentinel %s is not a tracked symbol; skipping", name)
            continue
        rules.append(RewriteRule(name, replacement, target=handle))

    result = apply_rules(program, catalog, rules)
    for owner in result.owners:
        if owner in catalog:
            state.refresh(owner)
    logger.info("Replaced %d sentinel references", result.rewritten)
    return result.rewritten
