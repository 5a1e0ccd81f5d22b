"""
Symbol Catalog, File Table and Dependency Graph Tests.

Validates that:
  1. One catalog entry exists per name, preferring definitions
  2. Locals and library names are not resolved
  3. Graph edges come from function bodies only, by name, address or call
  4. forward and reverse stay transposes of each other
  5. The file table records per-file declarations and references
"""

import os
import sys
import unittest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from linkfix.errors import ConfigurationError
from linkfix.state import RefactorState
from linkfix.syntax import parse_sources

HEADER = (
    "extern int counter;\n"
    "int bump(int n);\n"
)

IMPL = (
    "int counter;\n"
    "int limit = 10;\n"
    "int (*hook)(int) = bump;\n"
    "int\n"
    "bump(int n)\n"
    "{\n"
    "\tcounter += n;\n"
    "\treturn printf(\"%d\", counter);\n"
    "}\n"
    "int\n"
    "reset(void)\n"
    "{\n"
    "\tint limit;\n"
    "\tlimit = 0;\n"
    "\treturn bump(-counter) + limit;\n"
    "}\n"
)

USER = (
    "int *where(void) { return &counter; }\n"
)


class TestSymbolCatalog(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.state = RefactorState.build(parse_sources({
            "defs.h": HEADER, "impl.c": IMPL, "user.c": USER,
        }))

    def test_one_entry_per_name(self):
        names = self.state.catalog.names()
        self.assertEqual(set(names), {"counter", "bump", "limit", "hook", "reset", "where"})
        self.assertEqual(len(self.state.catalog), 6)

    def test_definition_wins_over_declaration(self):
        counter = self.state.decl_named("counter")
        self.assertEqual(counter.span.file, "impl.c")
        bump = self.state.decl_named("bump")
        self.assertTrue(bump.has_body)

    def test_require_missing(self):
        with self.assertRaises(ConfigurationError) as cm:
            self.state.catalog.require("nothere", "start symbol")
        self.assertEqual(cm.exception.symbol, "nothere")
        self.assertIn("start symbol", str(cm.exception))

    def test_rename_entries_swaps(self):
        state = RefactorState.build(parse_sources({"s.c": "int x;\nint y;\n"}))
        x, y = state.catalog.lookup("x"), state.catalog.lookup("y")
        state.catalog.rename_entries([(x, "x", "y"), (y, "y", "x")])
        self.assertEqual(state.catalog.lookup("y"), x)
        self.assertEqual(state.catalog.lookup("x"), y)


class TestDependencyGraph(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.state = RefactorState.build(parse_sources({
            "defs.h": HEADER, "impl.c": IMPL, "user.c": USER,
        }))

    def _uses(self, name):
        s = self.state
        return {s.program.decl(h).name for h in s.graph.uses(s.catalog.lookup(name))}

    def _used_by(self, name):
        s = self.state
        return {s.program.decl(h).name for h in s.graph.used_by(s.catalog.lookup(name))}

    def test_edges_by_name_and_call(self):
        self.assertEqual(self._uses("bump"), {"counter"})
        self.assertEqual(self._uses("reset"), {"bump", "counter"})

    def test_edges_by_address(self):
        self.assertEqual(self._uses("where"), {"counter"})

    def test_local_shadow_is_not_an_edge(self):
        self.assertNotIn("limit", self._uses("reset"))

    def test_initializers_are_not_edges(self):
        self.assertEqual(self._uses("hook"), set())
        self.assertEqual(self._used_by("bump"), {"reset"})

    def test_symmetry(self):
        self.assertTrue(self.state.graph.is_symmetric())

    def test_refresh_after_rewrite(self):
        state = RefactorState.build(parse_sources({"impl.c": IMPL}))
        reset = state.decl_named("reset")
        for expr in state.program.references(reset):
            if expr.text == "counter":
                expr.text = "ctxt->counter"
        state.refresh(reset.id)
        names = {state.program.decl(h).name for h in state.graph.uses(reset.id)}
        self.assertEqual(names, {"bump"})
        self.assertTrue(state.graph.is_symmetric())


class TestFileTable(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.state = RefactorState.build(parse_sources({
            "defs.h": HEADER, "impl.c": IMPL, "user.c": USER,
        }))

    def test_declared(self):
        s = self.state
        declared = {s.program.decl(h).name for h in s.files.declared["impl.c"]}
        self.assertEqual(declared, {"counter", "limit", "hook", "bump", "reset"})
        self.assertEqual(s.files.declared["defs.h"], set())

    def test_referenced_from_other_file(self):
        counter = self.state.catalog.lookup("counter")
        self.assertEqual(self.state.files.files_referencing(counter), {"impl.c", "user.c"})

    def test_initializer_references_count(self):
        bump = self.state.catalog.lookup("bump")
        self.assertIn("impl.c", self.state.files.files_referencing(bump))


if __name__ == "__main__":
    unittest.main()
