"""
Printer — re-emits arena records as C text.

A declaration is printed from the bytes it was parsed from.  The current
state of its records (name, storage class, parameters, rewritten
references, prepended call arguments) is turned into a list of
(start, end, text) splices which are applied bottom-up, so offsets of
earlier splices stay valid.  A declaration nobody touched prints exactly
as it was written.
"""

import logging
from typing import List, Optional, Tuple

from linkfix.syntax import CALL, NAME, Decl, Param, Program

logger = logging.getLogger(__name__)

Splice = Tuple[int, int, str]


def apply_splices(source: bytes, splices: List[Splice]) -> str:
    """Apply splices to source and decode the result.

    At equal offsets the replacement is applied before the insertion, so
    an argument inserted right after ``(`` lands in front of a renamed
    first argument.
    """
    ordered = sorted(splices, key=lambda s: (s[0], s[1]), reverse=True)
    out = bytearray(source)
    last_start = float("inf")
    for start, end, text in ordered:
        if end > last_start:
            logger.warning("Overlapping splice at offset %d-%d skipped", start, end)
            continue
        out[start:end] = text.encode("utf-8")
        last_start = start
    return out.decode("utf-8", errors="replace")


def render_params(params: List[Param], strip_names: bool = False) -> str:
    if strip_names:
        return ", ".join(p.stripped() for p in params)
    return ", ".join(p.text for p in params)


def _skip_space(source: bytes, pos: int) -> int:
    while pos < len(source) and source[pos:pos + 1] in (b" ", b"\t"):
        pos += 1
    return pos


def decl_splices(program: Program, decl: Decl, end: Optional[int] = None,
                 strip_params: bool = False) -> List[Splice]:
    """Splices turning the original text of decl into its current form."""
    splices: List[Splice] = []

    if decl.storage != decl.original_storage:
        if decl.storage_range is not None:
            start, stop = decl.storage_range
            if decl.storage:
                splices.append((start, stop, decl.storage))
            else:
                splices.append((start, _skip_space(decl.source, stop), ""))
        elif decl.storage:
            splices.append((0, 0, decl.storage + " "))

    if decl.name != decl.original_name:
        splices.append((decl.name_range[0], decl.name_range[1], decl.name))

    if decl.params_range is not None and (decl.params_modified or strip_params):
        start, stop = decl.params_range
        splices.append((start, stop, render_params(decl.params or [], strip_params)))

    for expr in program.references(decl):
        if expr.op == NAME and expr.text != expr.original:
            splices.append((expr.start, expr.end, expr.text))
        elif expr.op == CALL and expr.prepend:
            sep = ", " if expr.has_args else ""
            splices.append((expr.args_start, expr.args_start, ", ".join(expr.prepend) + sep))

    if end is not None:
        splices = [s for s in splices if s[1] <= end]
    return splices


def render_function(program: Program, decl: Decl) -> str:
    """Full function definition, body included."""
    return apply_splices(decl.source, decl_splices(program, decl))


def render_prototype(program: Program, decl: Decl) -> str:
    """Forward declaration of a function, parameter names stripped."""
    header = decl.source[:decl.header_end]
    splices = decl_splices(program, decl, end=decl.header_end, strip_params=True)
    return apply_splices(header, splices) + ";"


def render_data(program: Program, decl: Decl) -> str:
    """A data definition with its initializer."""
    return apply_splices(decl.source, decl_splices(program, decl)) + ";"
