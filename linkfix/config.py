"""
Refactor configuration.

A run is fully described by a ``RefactorConfig``: which files to parse
and where their declarations go, which symbols to start from, what to
rename, which parameters to thread and which legacy sentinels to strip.
Configurations are JSON files validated with pydantic; the arm64 Plan 9
linker refactor ships as a built-in profile (``linker_profile``).
"""

import json
import os
import logging
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field, ValidationError

from linkfix.errors import ConfigurationError, SourceIOError

logger = logging.getLogger(__name__)


class ThreadingSpec(BaseModel):
    """A parameter to thread through every function that needs it.

    seeds:         global -> accessor text replacing references to it;
                   an empty accessor means ``<name>-><global>``
    struct_header: optional C header; globals named like a field of
                   ``struct <struct_name>`` become seeds too
    exempt:        functions never given the parameter
    """
    name: str
    type: str
    seeds: Dict[str, str] = Field(default_factory=dict)
    struct_header: Optional[str] = None
    struct_name: str = "Link"
    exempt: List[str] = Field(default_factory=list)
    label: str = ""

    def accessor(self, symbol: str) -> str:
        return self.seeds.get(symbol) or f"{self.name}->{symbol}"

    @property
    def stage_label(self) -> str:
        return self.label or f"thread-{self.name}"


class RefactorConfig(BaseModel):
    """Everything a pipeline run needs."""
    source_root: str = ""
    file_map: Dict[str, str]                    # source file -> destination file
    start: List[str]
    rename: Dict[str, str] = Field(default_factory=dict)
    threading: List[ThreadingSpec] = Field(default_factory=list)
    sentinels: Dict[str, str] = Field(default_factory=dict)
    output_dir: str = "."
    overflow_file: str = "zzz.c"
    header_file: str = "l.h"
    build_marker: str = "//+build ignore"
    includes: str = ""

    @property
    def static_exempt(self) -> Set[str]:
        """Start symbols stay externally visible: they are the new entry points."""
        return set(self.start)

    def resolved_file_map(self) -> Dict[str, str]:
        """file_map with keys made absolute against source_root."""
        return {
            os.path.abspath(os.path.join(self.source_root, src)): dst
            for src, dst in self.file_map.items()
        }

    def source_paths(self) -> List[str]:
        return sorted(self.resolved_file_map())


def load_config(path: str) -> RefactorConfig:
    """Read a JSON configuration; relative roots are taken from the file's directory."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"config file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"invalid JSON in {path}: {e}") from e
    except OSError as e:
        raise SourceIOError(f"cannot read config {path}: {e}", path) from e

    try:
        config = RefactorConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"invalid configuration in {path}: {e}") from e

    base = os.path.dirname(os.path.abspath(path))
    if not os.path.isabs(config.source_root):
        config.source_root = os.path.join(base, config.source_root)
    if not os.path.isabs(config.output_dir):
        config.output_dir = os.path.join(base, config.output_dir)
    for spec in config.threading:
        if spec.struct_header and not os.path.isabs(spec.struct_header):
            spec.struct_header = os.path.join(base, spec.struct_header)

    logger.info("Loaded config %s: %d files, %d start symbols",
                path, len(config.file_map), len(config.start))
    return config


# ═══════════════════════════════════════════════════════════════════════
#  Built-in profile: Plan 9 arm64 linker -> liblink
# ═══════════════════════════════════════════════════════════════════════

_LINKER_FILE_MAP = {
    "sub.c": "xxx.c",
    "mod.c": "xxx.c",
    "list.c": "list{arch}.c",
    "noop.c": "obj{arch}.c",
    "elf.c": "xxx.c",
    "pass.c": "obj{arch}.c",
    "pobj.c": "xxx.c",
    "asm.c": "asm{arch}.c",
    "optab.c": "asm{arch}.c",
    "obj.c": "obj{arch}.c",
    "span.c": "asm{arch}.c",
    "asmout.c": "asm{arch}.c",
}

_LINKER_START = ["span", "asmout", "chipfloat", "follow", "noops", "listinit", "buildop"]

_LINKER_INCLUDES = """#include <u.h>
#include <libc.h>
#include <bio.h>
#include <link.h>
#include "../cmd/{arch}l/{arch}.out.h"
"""


def linker_profile(goroot: str, arch: str = "7", output_dir: str = ".") -> RefactorConfig:
    """Configuration turning $GOROOT/src/cmd/<arch>l into liblink form."""
    return RefactorConfig(
        source_root=os.path.join(goroot, "src", "cmd", f"{arch}l"),
        file_map={src: dst.format(arch=arch) for src, dst in _LINKER_FILE_MAP.items()},
        start=list(_LINKER_START),
        rename={
            "span": f"span{arch}",
            "chipfloat": f"chipfloat{arch}",
            "listinit": f"listinit{arch}",
            "noops": "addstacksplit",
        },
        threading=[
            ThreadingSpec(
                name="cursym",
                type="LSym *",
                seeds={"curtext": "cursym->text", "firstp": "cursym->text"},
                exempt=["diag"],  # liblink's diag has its own calling convention
            ),
            ThreadingSpec(
                name="ctxt",
                type="Link *",
                struct_header=os.path.join(goroot, "include", "link.h"),
                struct_name="Link",
            ),
        ],
        sentinels={"P": "nil", "S": "nil"},
        output_dir=output_dir,
        includes=_LINKER_INCLUDES.format(arch=arch),
    )
