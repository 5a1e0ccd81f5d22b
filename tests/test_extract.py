"""
Reachability Extractor Tests.
"""

import os
import sys
import unittest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from linkfix.errors import ConfigurationError
from linkfix.extract import extract, reachable
from linkfix.state import RefactorState
from linkfix.syntax import parse_sources

SOURCE = (
    "int shared;\n"
    "int orphan;\n"
    "void leaf(void) { shared++; }\n"
    "void ping(void);\n"
    "void pong(void) { ping(); }\n"
    "void ping(void) { pong(); leaf(); }\n"
    "void entry(void) { ping(); }\n"
    "void other(void) { orphan = 1; leaf(); }\n"
)


class TestReachable(unittest.TestCase):

    def setUp(self):
        self.state = RefactorState.build(parse_sources({"x.c": SOURCE}))

    def _names(self, handles):
        return {self.state.program.decl(h).name for h in handles}

    def test_closure_handles_cycles(self):
        root = self.state.catalog.lookup("entry")
        kept = reachable(self.state.graph, [root])
        self.assertEqual(self._names(kept), {"entry", "ping", "pong", "leaf", "shared"})

    def test_closure_is_closed(self):
        kept = reachable(self.state.graph, [self.state.catalog.lookup("entry")])
        for handle in kept:
            self.assertTrue(self.state.graph.uses(handle) <= kept)


class TestExtract(unittest.TestCase):

    def setUp(self):
        self.state = RefactorState.build(parse_sources({"x.c": SOURCE}))
        self.orphan = self.state.catalog.lookup("orphan")
        self.other = self.state.catalog.lookup("other")

    def test_trims_every_index(self):
        self.assertTrue(self.state.graph.is_symmetric())
        extract(self.state, ["entry"])

        names = set(self.state.catalog.names())
        self.assertEqual(names, {"entry", "ping", "pong", "leaf", "shared"})
        for handle in (self.orphan, self.other):
            self.assertNotIn(handle, self.state.catalog)
            self.assertNotIn(handle, self.state.graph.forward)
            self.assertNotIn(handle, self.state.graph.reverse)
        self.assertNotIn(self.orphan, self.state.files.referenced["x.c"])
        self.assertTrue(self.state.graph.is_symmetric())

    def test_pruned_users_leave_no_references(self):
        leaf = self.state.catalog.lookup("leaf")
        extract(self.state, ["entry"])
        users = {self.state.program.decl(h).name for h in self.state.graph.used_by(leaf)}
        self.assertEqual(users, {"ping"})

    def test_symbols_keep_program_order(self):
        extract(self.state, ["entry"])
        self.assertEqual([d.name for d in self.state.symbols()],
                         ["shared", "leaf", "pong", "ping", "entry"])

    def test_missing_start_symbol(self):
        with self.assertRaises(ConfigurationError):
            extract(self.state, ["entry", "nowhere"])
        # nothing was trimmed
        self.assertIn(self.orphan, self.state.catalog)


if __name__ == "__main__":
    unittest.main()
