"""
Emitter and Stage Recorder.

After every transformation the live program is printed, one text per
destination file, and written as a numbered stage directory (``l.0``,
``l.1``, ...).  Snapshots are kept in memory and never modified, so the
diffs between consecutive stages (and between the first and the last)
show exactly what each transformation did.

Layout of an emitted file:

    //+build ignore            build marker
    // From a.c b.c            .c destinations: where the code came from
    #include ...              .c destinations: standard includes
    prototypes                 one per function definition, names stripped
    data definitions           only those with initializers, no enumerators
    function definitions
"""

import os
import re
import shutil
import difflib
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from linkfix.errors import SourceIOError
from linkfix.printer import render_data, render_function, render_prototype
from linkfix.state import RefactorState

logger = logging.getLogger(__name__)

_PATCH_NAME = re.compile(r"d\d+-\d+\.patch$")


class FileRouter:
    """Decides which output file a source file's declarations go to."""

    def __init__(self, file_map: Dict[str, str], overflow_file: str = "zzz.c",
                 header_file: str = "l.h"):
        self.file_map = dict(file_map)
        self.overflow_file = overflow_file
        self.header_file = header_file

    def route(self, path: str) -> str:
        dest = self.file_map.get(path)
        if dest is not None:
            return dest
        if path.endswith(".h"):
            return self.header_file
        return self.overflow_file

    def destinations(self) -> List[str]:
        return sorted(set(self.file_map.values()))

    def sources_for(self, dest: str) -> List[str]:
        return sorted(os.path.basename(src) for src, d in self.file_map.items() if d == dest)


class Emitter:
    """Prints the live program, grouped by destination file."""

    def __init__(self, router: FileRouter, build_marker: str = "//+build ignore",
                 includes: str = ""):
        self.router = router
        self.build_marker = build_marker
        self.includes = includes

    def render(self, state: RefactorState) -> Dict[str, str]:
        program = state.program
        buffers: Dict[str, Tuple[List[str], List[str], List[str]]] = {
            dest: ([], [], []) for dest in self.router.destinations()
        }
        for decl in state.symbols():
            dest = self.router.route(decl.span.file)
            protos, data, funcs = buffers.setdefault(dest, ([], [], []))
            if decl.is_function:
                if not decl.has_body:
                    continue
                protos.append(render_prototype(program, decl) + "\n")
                funcs.append(render_function(program, decl) + "\n\n")
            elif decl.has_init and not decl.is_enum:
                data.append(render_data(program, decl) + "\n\n")

        return {dest: self._assemble(dest, *buffers[dest]) for dest in sorted(buffers)}

    def _assemble(self, dest: str, protos: List[str], data: List[str], funcs: List[str]) -> str:
        parts = [self.build_marker + "\n\n"]
        if not dest.endswith(".h"):
            sources = self.router.sources_for(dest)
            if sources:
                parts.append("// From " + " ".join(sources) + "\n\n")
            if self.includes:
                parts.append(self.includes.rstrip("\n") + "\n\n")
        parts.extend(protos)
        parts.append("\n")
        parts.extend(data)
        parts.extend(funcs)
        return "".join(parts)


@dataclass(frozen=True)
class Snapshot:
    """The emitted program after one stage.  Read-only."""
    index: int
    label: str
    directory: str
    files: Mapping[str, str]


class StageRecorder:
    """Writes numbered stage directories and the diffs between them."""

    def __init__(self, output_dir: str, prefix: str = "l."):
        self.output_dir = output_dir
        self.prefix = prefix
        self.snapshots: List[Snapshot] = []

    def clear(self) -> List[str]:
        """Remove stage directories and patches left by an earlier run."""
        if not os.path.isdir(self.output_dir):
            return []
        stage_dir = re.compile(re.escape(self.prefix) + r"\d+$")
        removed = []
        try:
            for name in sorted(os.listdir(self.output_dir)):
                path = os.path.join(self.output_dir, name)
                if stage_dir.match(name) and os.path.isdir(path):
                    shutil.rmtree(path)
                elif _PATCH_NAME.match(name) and os.path.isfile(path):
                    os.remove(path)
                else:
                    continue
                removed.append(name)
        except OSError as e:
            raise SourceIOError(f"cannot clear {self.output_dir}: {e}", self.output_dir) from e
        if removed:
            logger.info("Removed %d stale outputs from %s", len(removed), self.output_dir)
        return removed

    def record(self, label: str, files: Dict[str, str]) -> Snapshot:
        index = len(self.snapshots)
        directory = os.path.join(self.output_dir, f"{self.prefix}{index}")
        try:
            if os.path.isdir(directory):
                shutil.rmtree(directory)
            os.makedirs(directory, 0o775)
            for name, text in sorted(files.items()):
                with open(os.path.join(directory, name), "w", encoding="utf-8") as f:
                    f.write(text)
        except OSError as e:
            raise SourceIOError(f"cannot write stage {index} to {directory}: {e}", directory) from e

        snapshot = Snapshot(index, label, directory, MappingProxyType(dict(files)))
        self.snapshots.append(snapshot)
        logger.info("Stage %d (%s): %d files in %s", index, label, len(files), directory)
        return snapshot

    def get(self, index: int) -> Optional[Snapshot]:
        if 0 <= index < len(self.snapshots):
            return self.snapshots[index]
        return None

    @staticmethod
    def diff(old: Snapshot, new: Snapshot) -> str:
        """Unified diff between two snapshots, file by file."""
        a_dir = os.path.basename(old.directory)
        b_dir = os.path.basename(new.directory)
        chunks: List[str] = []
        for name in sorted(set(old.files) | set(new.files)):
            a = old.files.get(name, "")
            b = new.files.get(name, "")
            if a == b:
                continue
            chunks.extend(difflib.unified_diff(
                a.splitlines(keepends=True), b.splitlines(keepends=True),
                fromfile=f"{a_dir}/{name}", tofile=f"{b_dir}/{name}",
            ))
        return "".join(chunks)

    def write_diffs(self) -> Dict[str, str]:
        """Write d<i-1>-<i>.patch for each stage and d0-<last>.patch.

        Returns patch path -> diff text.
        """
        written: Dict[str, str] = {}
        if not self.snapshots:
            return written
        pairs = [(i - 1, i) for i in range(1, len(self.snapshots))]
        pairs.append((0, len(self.snapshots) - 1))
        for a, b in pairs:
            path = os.path.join(self.output_dir, f"d{a}-{b}.patch")
            text = self.diff(self.snapshots[a], self.snapshots[b])
            try:
                with open(path, "w", encoding="utf-8") as f:
                    f.write(text)
            except OSError as e:
                raise SourceIOError(f"cannot write {path}: {e}", path) from e
            written[path] = text
        logger.info("Wrote %d patches to %s", len(written), self.output_dir)
        return written
