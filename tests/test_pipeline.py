"""
Pipeline Tests — configuration loading and the end-to-end run on
tests/mock_linker.

The fixture is a miniature linker: span() loops over firstp and calls
outer -> middle -> inner, and inner reads the curtext and debug globals.
sibling() declares a local curtext and must not be threaded.
"""

import json
import os
import shutil
import sys
import tempfile
import unittest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

MOCK_LINKER = os.path.join(PROJECT_ROOT, "tests", "mock_linker")
MOCK_CONFIG = os.path.join(MOCK_LINKER, "linkfix.json")

from linkfix.config import RefactorConfig, linker_profile, load_config
from linkfix.errors import ConfigurationError, SourceIOError
from linkfix.pipeline import build_stages, load_state, run_pipeline


class TestLoadConfig(unittest.TestCase):

    def test_fixture_config(self):
        config = load_config(MOCK_CONFIG)
        self.assertEqual(config.start, ["span"])
        self.assertEqual(config.source_root, os.path.join(MOCK_LINKER, "."))
        self.assertEqual(config.threading[1].struct_header,
                         os.path.join(MOCK_LINKER, "include/link.h"))
        self.assertIn(os.path.join(MOCK_LINKER, "span.c"), config.source_paths())
        self.assertEqual(config.static_exempt, {"span"})

    def test_threading_defaults(self):
        config = load_config(MOCK_CONFIG)
        ctxt = config.threading[1]
        self.assertEqual(ctxt.stage_label, "thread-ctxt")
        self.assertEqual(ctxt.accessor("debug"), "ctxt->debug")
        self.assertEqual(config.threading[0].accessor("firstp"), "cursym->text")

    def test_missing_file(self):
        with self.assertRaises(ConfigurationError):
            load_config(os.path.join(MOCK_LINKER, "nope.json"))

    def test_bad_json(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "bad.json")
            with open(path, "w") as f:
                f.write("{ not json")
            with self.assertRaises(ConfigurationError):
                load_config(path)

    def test_invalid_config(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "partial.json")
            with open(path, "w") as f:
                json.dump({"file_map": {"a.c": "b.c"}}, f)
            with self.assertRaises(ConfigurationError) as cm:
                load_config(path)
            self.assertIn("start", str(cm.exception))

    def test_unreadable_config(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(SourceIOError) as cm:
                load_config(tmp)
            self.assertEqual(cm.exception.path, tmp)

    def test_linker_profile(self):
        config = linker_profile("/go", arch="7")
        self.assertEqual(config.source_root, os.path.join("/go", "src", "cmd", "7l"))
        self.assertEqual(config.file_map["span.c"], "asm7.c")
        self.assertEqual(config.rename["noops"], "addstacksplit")
        self.assertEqual([t.name for t in config.threading], ["cursym", "ctxt"])
        self.assertEqual(config.threading[0].exempt, ["diag"])
        self.assertEqual(config.threading[1].struct_header, os.path.join("/go", "include", "link.h"))
        self.assertEqual(config.sentinels, {"P": "nil", "S": "nil"})
        self.assertIn('#include "../cmd/7l/7.out.h"', config.includes)

    def test_stage_order(self):
        config = load_config(MOCK_CONFIG)
        labels = [label for label, _ in build_stages(config)]
        self.assertEqual(labels, ["extract", "static", "rename",
                                  "thread-cursym", "thread-ctxt", "sentinels"])


class TestEndToEnd(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.tmp = tempfile.mkdtemp(prefix="linkfix_")
        cls.config = load_config(MOCK_CONFIG)
        cls.ctx = run_pipeline(cls.config, output_dir=cls.tmp)
        cls.final = cls.ctx.snapshots[-1].files

    @classmethod
    def tearDownClass(cls):
        shutil.rmtree(cls.tmp, ignore_errors=True)

    def test_stages_written(self):
        self.assertEqual(len(self.ctx.snapshots), 6)
        for i in range(6):
            self.assertTrue(os.path.isdir(os.path.join(self.tmp, f"l.{i}")))
        self.assertEqual(sorted(os.listdir(os.path.join(self.tmp, "l.5"))),
                         ["asm7.c", "l.h", "obj7.c"])

    def test_patches_written(self):
        names = sorted(os.path.basename(p) for p in self.ctx.patches)
        self.assertEqual(names, ["d0-1.patch", "d0-5.patch", "d1-2.patch",
                                 "d2-3.patch", "d3-4.patch", "d4-5.patch"])
        for path in self.ctx.patches:
            self.assertTrue(os.path.exists(path))

    def test_extraction(self):
        kept = set(self.ctx.results["extract"])
        self.assertEqual(kept, {
            "span", "outer", "middle", "inner", "sibling", "helper", "diag",
            "curtext", "firstp", "debug", "P", "table",
        })

    def test_static(self):
        self.assertEqual(set(self.ctx.results["static"]),
                         {"diag", "inner", "helper", "firstp", "outer"})

    def test_threaded_functions(self):
        expected = {"span7", "outer", "middle", "inner"}
        self.assertEqual(set(self.ctx.results["thread-cursym"]), expected)
        self.assertEqual(set(self.ctx.results["thread-ctxt"]), expected)
        self.assertEqual(self.ctx.results["sentinels"], 2)

    def test_asm_output(self):
        self.assertEqual(self.final["asm7.c"], (
            "//+build ignore\n\n"
            "// From span.c\n\n"
            "#include <u.h>\n#include <libc.h>\n#include <link.h>\n\n"
            "void\nspan7(Link *, LSym *);\n"
            "static void\nouter(Link *, LSym *, Prog *);\n"
            "\n"
            "static int table[] = { 1, 2, 3 };\n\n"
            "void\n"
            "span7(Link *ctxt, LSym *cursym)\n"
            "{\n"
            "\tProg *p;\n"
            "\n"
            "\tfor(p = cursym->text; p != nil; p = p->link)\n"
            "\t\touter(ctxt, cursym, p);\n"
            "\tsibling(table[0]);\n"
            "}\n\n"
            "static void\n"
            "outer(Link *ctxt, LSym *cursym, Prog *p)\n"
            "{\n"
            "\tmiddle(ctxt, cursym, p);\n"
            "}\n\n"
        ))

    def test_obj_output(self):
        text = self.final["obj7.c"]
        self.assertTrue(text.startswith("//+build ignore\n\n// From obj.c pass.c\n\n"))
        self.assertIn(
            "static void\ndiag(char *);\n"
            "void\nmiddle(Link *, LSym *, Prog *);\n"
            "static void\ninner(Link *, LSym *);\n"
            "void\nsibling(int);\n"
            "static int\nhelper(int);\n",
            text,
        )
        self.assertIn(
            "static void\n"
            "inner(Link *ctxt, LSym *cursym)\n"
            "{\n"
            "\tProg *q;\n"
            "\n"
            "\tq = cursym->text;\n"
            "\tif(ctxt->debug)\n"
            "\t\tq = q->link;\n"
            "}\n",
            text,
        )
        self.assertIn("\tif(p == nil)\n\t\tdiag(\"nil prog\");\n\tinner(ctxt, cursym);\n", text)

    def test_untouched_code(self):
        text = self.final["obj7.c"]
        # sibling's curtext is a local, diag is exempt from threading
        self.assertIn("void\nsibling(int n)\n{\n\tint curtext;\n\n\tcurtext = n;\n\thelper(curtext);\n}\n", text)
        self.assertIn("curtext ? \"text\" : \"none\"", text)
        self.assertNotIn("unused", text)
        self.assertNotIn("anames", text)

    def test_header_output(self):
        self.assertEqual(self.final["l.h"], "//+build ignore\n\n\n")

    def test_stage_diffs(self):
        static_patch = self.ctx.patches[os.path.join(self.tmp, "d0-1.patch")]
        self.assertIn("+static void", static_patch)
        rename_patch = self.ctx.patches[os.path.join(self.tmp, "d1-2.patch")]
        self.assertIn("+span7(void)", rename_patch)
        sentinel_patch = self.ctx.patches[os.path.join(self.tmp, "d4-5.patch")]
        self.assertIn("+\tif(p == nil)", sentinel_patch)

    def _changed_lines(self, name):
        text = self.ctx.patches[os.path.join(self.tmp, name)]
        return [line for line in text.splitlines()
                if line[:1] in "+-" and not line.startswith(("+++", "---"))]

    def test_threading_diffs_touch_only_threaded_functions(self):
        threaded = ("span7", "outer", "middle", "inner", "curtext", "firstp", "debug", "cursym")
        for patch in ("d2-3.patch", "d3-4.patch"):
            changed = self._changed_lines(patch)
            self.assertTrue(changed, patch)
            for line in changed:
                self.assertTrue(any(word in line for word in threaded), f"{patch}: {line!r}")
                for untouched in ("sibling", "helper", "diag", "table"):
                    self.assertNotIn(untouched, line, f"{patch}: {line!r}")

    def test_cursym_diff_covers_prototypes_and_bodies(self):
        changed = self._changed_lines("d2-3.patch")
        for line in (
            "-span7(void);", "+span7(LSym *);",
            "-outer(Prog *);", "+outer(LSym *, Prog *);",
            "+middle(LSym *, Prog *);", "+inner(LSym *);",
            "+span7(LSym *cursym)", "+\t\touter(cursym, p);",
            "+\tmiddle(cursym, p);", "+\tinner(cursym);",
            "-\tq = curtext;", "+\tq = cursym->text;",
        ):
            self.assertIn(line, changed)

    def test_rerun_is_deterministic(self):
        tmp = tempfile.mkdtemp(prefix="linkfix_")
        try:
            again = run_pipeline(self.config, output_dir=tmp)
            self.assertEqual(dict(again.snapshots[-1].files), dict(self.final))
        finally:
            shutil.rmtree(tmp, ignore_errors=True)


class TestStaleOutputs(unittest.TestCase):

    def test_outputs_of_a_longer_run_are_removed(self):
        tmp = tempfile.mkdtemp(prefix="linkfix_")
        try:
            os.makedirs(os.path.join(tmp, "l.9"))
            for name in ("d8-9.patch", "d0-9.patch", "notes.txt"):
                with open(os.path.join(tmp, name), "w") as f:
                    f.write("old\n")
            run_pipeline(load_config(MOCK_CONFIG), output_dir=tmp)
            self.assertFalse(os.path.exists(os.path.join(tmp, "l.9")))
            self.assertFalse(os.path.exists(os.path.join(tmp, "d8-9.patch")))
            self.assertFalse(os.path.exists(os.path.join(tmp, "d0-9.patch")))
            self.assertTrue(os.path.exists(os.path.join(tmp, "notes.txt")))
            self.assertTrue(os.path.exists(os.path.join(tmp, "d0-5.patch")))
        finally:
            shutil.rmtree(tmp, ignore_errors=True)


class TestPipelineErrors(unittest.TestCase):

    def test_missing_start_symbol_aborts(self):
        config = load_config(MOCK_CONFIG)
        config = RefactorConfig.model_validate({**config.model_dump(), "start": ["nowhere"]})
        tmp = tempfile.mkdtemp(prefix="linkfix_")
        try:
            with self.assertRaises(ConfigurationError):
                run_pipeline(config, output_dir=tmp)
            self.assertFalse(os.path.exists(os.path.join(tmp, "l.0")))
        finally:
            shutil.rmtree(tmp, ignore_errors=True)

    def test_missing_source_file(self):
        config = RefactorConfig(source_root=MOCK_LINKER, file_map={"gone.c": "x.c"}, start=["x"])
        with self.assertRaises(SourceIOError) as cm:
            load_state(config)
        self.assertTrue(cm.exception.path.endswith("gone.c"))


if __name__ == "__main__":
    unittest.main()
