"""
Refactor pipeline.

    parse -> catalog -> graph -> extract -> static -> rename
          -> thread parameter (once per ThreadingSpec) -> strip sentinels -> diff

Every stage is a function of (state, context); after each one the
program is emitted as a new numbered snapshot.  The context carries the
configuration, the file router, the emitter, the stage recorder and the
per-stage results; nothing lives in module globals.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from linkfix.config import RefactorConfig, ThreadingSpec
from linkfix.emitter import Emitter, FileRouter, Snapshot, StageRecorder
from linkfix.extract import extract
from linkfix.state import RefactorState
from linkfix.syntax import parse_program, read_source, struct_fields
from linkfix.transforms import make_static, rename, strip_sentinels, thread_parameter

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    config: RefactorConfig
    router: FileRouter
    emitter: Emitter
    recorder: StageRecorder
    stage: int = 0
    results: Dict[str, Any] = field(default_factory=dict)
    patches: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: RefactorConfig, output_dir: Optional[str] = None) -> "PipelineContext":
        router = FileRouter(config.resolved_file_map(), config.overflow_file, config.header_file)
        return cls(
            config=config,
            router=router,
            emitter=Emitter(router, config.build_marker, config.includes),
            recorder=StageRecorder(output_dir or config.output_dir),
        )

    @property
    def snapshots(self) -> List[Snapshot]:
        return self.recorder.snapshots

    def emit(self, state: RefactorState, label: str) -> Snapshot:
        snapshot = self.recorder.record(label, self.emitter.render(state))
        self.stage = len(self.recorder.snapshots)
        return snapshot


Stage = Callable[[RefactorState, PipelineContext], Any]


def load_state(config: RefactorConfig) -> RefactorState:
    """Parse every configured source file and index it."""
    return RefactorState.build(parse_program(config.source_paths()))


def _names(state: RefactorState, handles) -> List[str]:
    return [state.program.decl(h).name for h in handles]


def stage_extract(state: RefactorState, ctx: PipelineContext):
    return sorted(_names(state, extract(state, ctx.config.start)))


def stage_static(state: RefactorState, ctx: PipelineContext):
    return _names(state, make_static(state, ctx.config.static_exempt, ctx.router))


def stage_rename(state: RefactorState, ctx: PipelineContext):
    return _names(state, rename(state, ctx.config.rename))


def _thread_stage(spec: ThreadingSpec) -> Stage:
    def stage(state: RefactorState, ctx: PipelineContext):
        fields: Optional[Set[str]] = None
        if spec.struct_header:
            fields = struct_fields(read_source(spec.struct_header), spec.struct_name)
            logger.debug("%s: %d fields in struct %s", spec.stage_label, len(fields), spec.struct_name)
        result = thread_parameter(state, spec, fields)
        return _names(state, result.functions)
    return stage


def stage_sentinels(state: RefactorState, ctx: PipelineContext):
    return strip_sentinels(state, ctx.config.sentinels)


def build_stages(config: RefactorConfig) -> List[Tuple[str, Stage]]:
    stages: List[Tuple[str, Stage]] = [
        ("extract", stage_extract),
        ("static", stage_static),
        ("rename", stage_rename),
    ]
    for spec in config.threading:
        stages.append((spec.stage_label, _thread_stage(spec)))
    stages.append(("sentinels", stage_sentinels))
    return stages


def run_pipeline(config: RefactorConfig, output_dir: Optional[str] = None,
                 state: Optional[RefactorState] = None) -> PipelineContext:
    """Run every stage, emitting a snapshot after each, then write the diffs.

    Stage directories and patches of an earlier run in the same output
    directory are removed first.  Any RefactorError aborts the run; the
    snapshots written so far stay on disk for inspection.
    """
    ctx = PipelineContext.from_config(config, output_dir)
    if state is None:
        state = load_state(config)

    ctx.recorder.clear()
    for label, stage in build_stages(config):
        logger.info("Stage %d: %s", ctx.stage, label)
        ctx.results[label] = stage(state, ctx)
        ctx.emit(state, label)

    ctx.patches = ctx.recorder.write_diffs()
    return ctx
