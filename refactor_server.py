"""
linkfix — MCP Server

Exposes the refactoring engine via the Model Context Protocol:

  1. load_program        — load a JSON config (or the built-in linker profile) and index the sources
  2. list_symbols        — tracked declarations of one source file
  3. symbol_dependencies — what a symbol uses and what uses it
  4. preview_extraction  — what extraction would keep, without touching anything
  5. run_refactor        — run the whole pipeline, writing l.<n>/ stages and patches
  6. show_stage_diff     — unified diff between two recorded stages
"""

from mcp.server.fastmcp import FastMCP
import logging
import os
import sys

# Ensure the linkfix package is importable
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from linkfix.config import linker_profile, load_config
from linkfix.errors import RefactorError
from linkfix.extract import reachable
from linkfix.pipeline import load_state, run_pipeline
from linkfix.state import RefactorState
from linkfix.emitter import StageRecorder

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════════
#  Server Setup
# ═══════════════════════════════════════════════════════════════════════

mcp = FastMCP("linkfix")

config = None       # RefactorConfig of the loaded program
state = None        # RefactorState as parsed, never transformed
last_run = None     # PipelineContext of the latest run_refactor


def _require_program() -> str:
    if state is None:
        return "Error: No program loaded. Call load_program first."
    return ""


def _symbol_row(s: RefactorState, handle: int) -> str:
    decl = s.program.decl(handle)
    kind = "function" if decl.is_function else ("enum" if decl.is_enum else "data")
    storage = decl.storage or "-"
    return (
        f"| `{decl.name}` | {kind} | {storage} | {decl.span.line} "
        f"| {len(s.graph.uses(handle))} | {len(s.graph.used_by(handle))} |\n"
    )


# ═══════════════════════════════════════════════════════════════════════
#  Tool 1 — Load Program
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def load_program(config_path: str = "", goroot: str = "", arch: str = "7") -> str:
    """
    Loads a refactoring configuration and parses every source file it names.

    Args:
        config_path: Path to a JSON configuration file.
        goroot:      Instead of a config file, use the built-in Plan 9
                     linker profile for $GOROOT/src/cmd/<arch>l.
        arch:        Linker architecture character for the profile (default "7").
    """
    global config, state, last_run

    if not config_path and not goroot:
        return "Error: Pass either config_path or goroot."
    if config_path and not os.path.exists(config_path):
        return f"Error: Config file not found at {config_path}"
    if goroot and not os.path.isdir(goroot):
        return f"Error: GOROOT not found at {goroot}"

    try:
        if config_path:
            loaded = load_config(config_path)
        else:
            loaded = linker_profile(goroot, arch)
        parsed = load_state(loaded)
    except RefactorError as e:
        return f"Error loading program: {e}"
    except Exception as e:
        logger.exception("load_program failed")
        return f"Error loading program: {e}"

    config, state, last_run = loaded, parsed, None
    info = state.summary()
    return (
        f"Successfully loaded program from {len(config.file_map)} configured files.\n"
        f"Indexed: {info['declarations']} declarations, {info['symbols']} symbols, "
        f"{info['functions']} function definitions, {info['edges']} dependency edges.\n"
        f"Start symbols: {', '.join(config.start)}"
    )


# ═══════════════════════════════════════════════════════════════════════
#  Tool 2 — List Symbols
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def list_symbols(file_path: str) -> str:
    """
    Lists the tracked declarations originating in one source file.

    Args:
        file_path: Path of the source file, absolute, relative to the
                   source root, or just its basename.
    """
    err = _require_program()
    if err:
        return err

    wanted = file_path.replace("\\", "/")
    candidates = [
        p for p in state.program.files
        if p == os.path.abspath(os.path.join(config.source_root, wanted))
        or os.path.basename(p) == os.path.basename(wanted)
    ]
    if not candidates:
        known = ", ".join(sorted(os.path.basename(p) for p in state.program.files))
        return f"Error: {file_path} is not part of the program. Known files: {known}"

    path = candidates[0]
    handles = [d.id for d in state.program.declarations_in(path) if d.id in state.catalog]
    if not handles:
        return f"No tracked symbols in {path}"

    output = f"## Symbols in `{os.path.basename(path)}` ({len(handles)})\n\n"
    output += "| Name | Kind | Storage | Line | Uses | Used by |\n"
    output += "|------|------|---------|------|------|---------|\n"
    for handle in handles:
        output += _symbol_row(state, handle)
    return output


# ═══════════════════════════════════════════════════════════════════════
#  Tool 3 — Symbol Dependencies
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def symbol_dependencies(symbol_name: str) -> str:
    """
    Shows what a symbol's body references and which functions reference it.

    Args:
        symbol_name: Name of a tracked file-scope symbol.
    """
    err = _require_program()
    if err:
        return err

    handle = state.catalog.lookup(symbol_name)
    if handle is None:
        return f"Error: Symbol `{symbol_name}` not found."

    decl = state.program.decl(handle)
    uses = sorted(state.program.decl(h).name for h in state.graph.uses(handle))
    users = sorted(state.program.decl(h).name for h in state.graph.used_by(handle))
    files = sorted(os.path.basename(p) for p in state.files.files_referencing(handle))

    output = f"## `{symbol_name}`\n\n"
    output += f"**Declared at:** `{decl.span}`\n\n"
    output += f"### Uses ({len(uses)})\n"
    output += "".join(f"- `{n}`\n" for n in uses) or "_nothing tracked_\n"
    output += f"\n### Used by ({len(users)})\n"
    output += "".join(f"- `{n}`\n" for n in users) or "_no function_\n"
    output += f"\n**Referenced from files:** {', '.join(files) or 'none'}\n"
    return output


# ═══════════════════════════════════════════════════════════════════════
#  Tool 4 — Preview Extraction
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def preview_extraction(start_symbols: str = "") -> str:
    """
    Reports which symbols extraction would keep, without modifying anything.

    Args:
        start_symbols: Comma-separated start symbols.  Defaults to the
                       configured start set.
    """
    err = _require_program()
    if err:
        return err

    names = [n.strip() for n in start_symbols.split(",") if n.strip()] or list(config.start)
    missing = [n for n in names if state.catalog.lookup(n) is None]
    if missing:
        return f"Error: Start symbol(s) not found: {', '.join(missing)}"

    kept = reachable(state.graph, [state.catalog.lookup(n) for n in names])
    dropped = [d.name for d in state.symbols() if d.id not in kept]
    kept_names = sorted(state.program.decl(h).name for h in kept)

    output = f"## Extraction from {', '.join(names)}\n\n"
    output += "| Metric | Count |\n|--------|-------|\n"
    output += f"| Symbols now | {len(state.catalog)} |\n"
    output += f"| Kept | {len(kept)} |\n"
    output += f"| Dropped | {len(dropped)} |\n"
    output += "\n### Kept\n" + ", ".join(f"`{n}`" for n in kept_names) + "\n"
    if dropped:
        output += "\n### Dropped\n" + ", ".join(f"`{n}`" for n in sorted(dropped)) + "\n"
    return output


# ═══════════════════════════════════════════════════════════════════════
#  Tool 5 — Run Refactor
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def run_refactor(config_path: str = "", output_dir: str = "") -> str:
    """
    Runs every stage, writing l.<n>/ snapshots and d<a>-<b>.patch files.

    Args:
        config_path: JSON configuration to run.  Defaults to the loaded one.
        output_dir:  Where stages and patches go.  Defaults to the
                     configured output directory.
    """
    global last_run

    try:
        if config_path:
            run_config = load_config(config_path)
        elif config is not None:
            run_config = config
        else:
            return "Error: No program loaded. Call load_program or pass config_path."
        ctx = run_pipeline(run_config, output_dir or None)
    except RefactorError as e:
        return f"Error during refactor: {e}"
    except Exception as e:
        logger.exception("run_refactor failed")
        return f"Error during refactor: {e}"

    last_run = ctx
    output = "## Refactor complete\n\n"
    output += "| Stage | Label | Directory | Files |\n"
    output += "|-------|-------|-----------|-------|\n"
    for snap in ctx.snapshots:
        output += f"| {snap.index} | {snap.label} | `{snap.directory}` | {len(snap.files)} |\n"

    output += "\n### Results\n"
    for label, value in ctx.results.items():
        count = value if isinstance(value, int) else len(value)
        output += f"- **{label}**: {count}\n"

    output += "\n### Patches\n"
    for path, text in ctx.patches.items():
        changed = sum(1 for line in text.splitlines()
                      if line[:1] in "+-" and not line.startswith(("+++", "---")))
        output += f"- `{os.path.basename(path)}`: {changed} changed lines\n"
    return output


# ═══════════════════════════════════════════════════════════════════════
#  Tool 6 — Show Stage Diff
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def show_stage_diff(from_stage: int, to_stage: int) -> str:
    """
    Shows the unified diff between two stages of the latest run.

    Args:
        from_stage: Index of the older stage (0 is the extracted program).
        to_stage:   Index of the newer stage.
    """
    if last_run is None:
        return "Error: No refactor has run yet. Call run_refactor first."

    old = last_run.recorder.get(from_stage)
    new = last_run.recorder.get(to_stage)
    if old is None or new is None:
        return f"Error: Stages run from 0 to {len(last_run.snapshots) - 1}."

    text = StageRecorder.diff(old, new)
    if not text:
        return f"No differences between stage {from_stage} ({old.label}) and stage {to_stage} ({new.label})."
    return f"## Stage {from_stage} ({old.label}) → {to_stage} ({new.label})\n\n```diff\n{text}```\n"


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        if hasattr(mcp, "_tool_manager") and hasattr(mcp._tool_manager, "_tools"):
            tools = mcp._tool_manager._tools.keys()
            logger.info("linkfix server starting with %d tools: %s", len(tools), list(tools))
    except Exception as e:
        logger.debug("Cannot inspect tools: %s", e)

    mcp.run()
