from conveyor.state.ids import default_run_id, ensure_unique_run_id, slugify
from conveyor.state.report import render_plan_md, write_report
from conveyor.state.runs import (
    ApplyResult,
    CommitRecord,
    Run,
    RunBase,
    RunPaths,
    RunStore,
    TaskApplyRecord,
    read_json,
    write_json,
)

__all__ = [
    "ApplyResult",
    "CommitRecord",
    "Run",
    "RunBase",
    "RunPaths",
    "RunStore",
    "TaskApplyRecord",
    "default_run_id",
    "ensure_unique_run_id",
    "read_json",
    "render_plan_md",
    "slugify",
    "write_json",
    "write_report",
]
