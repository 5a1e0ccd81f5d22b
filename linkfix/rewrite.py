"""
Reference rewrite rules.

Name references carry their own textual copy of the name they refer to,
so renaming a symbol or routing a global through a parameter means
changing that text.  Each such change is a ``RewriteRule``; a set of
rules is applied in one pass over the arena.

When several rules match the same reference, the last one wins and the
collision is counted.
"""

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Sequence, Set

from linkfix.symbols import SymbolCatalog
from linkfix.syntax import NAME, Expr, Program

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RewriteRule:
    """Replace references spelled ``match`` with ``replacement``.

    target: only references currently resolving to this handle
    scope:  only references owned by these declarations
    """
    match: str
    replacement: str
    target: Optional[int] = None
    scope: Optional[FrozenSet[int]] = None

    def applies(self, expr: Expr, catalog: SymbolCatalog) -> bool:
        if expr.op != NAME or expr.local or expr.text != self.match:
            return False
        if self.scope is not None and expr.owner not in self.scope:
            return False
        if self.target is not None and catalog.resolve(expr) != self.target:
            return False
        return True


@dataclass
class RewriteResult:
    rewritten: int = 0
    collisions: int = 0
    owners: Set[int] = field(default_factory=set)


def apply_rules(program: Program, catalog: SymbolCatalog,
                rules: Sequence[RewriteRule]) -> RewriteResult:
    """Apply rules to every name reference in program."""
    result = RewriteResult()
    if not rules:
        return result

    for expr in program.exprs:
        if expr.op != NAME:
            continue
        matches = [rule for rule in rules if rule.applies(expr, catalog)]
        if not matches:
            continue
        if len(matches) > 1:
            result.collisions += 1
            logger.warning(
                "%d rules rewrite %r in %s; using %r",
                len(matches), expr.text, program.decl(expr.owner).name,
                matches[-1].replacement,
            )
        expr.text = matches[-1].replacement
        result.rewritten += 1
        result.owners.add(expr.owner)
    return result
