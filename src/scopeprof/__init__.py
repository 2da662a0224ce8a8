"""scopeprof: scope-based single and multithreaded profiling.

Provides:
- enter_scope: Context manager measuring one named scope on the calling thread
- begin_application_scope: Root scope; closing it prints the merged report
- report / print_timings: On-demand report of everything recorded so far
- flush_current_thread: Self-flush hook for long-lived pool workers
- profile: Decorator measuring every call of a function

Usage:
    import scopeprof

    with scopeprof.begin_application_scope("main"):
        for _ in range(100):
            with scopeprof.enter_scope("iteration"):
                work()

Configuration is read once from the environment at import (see
scopeprof._config). With SCOPEPROF_ENABLE=0 every function above is bound to
the no-op recorder.
"""

from scopeprof._config import ProfilerConfig
from scopeprof._merge import MergedNode, merge
from scopeprof._recorder import ActiveRecorder, NoopGuard, NoopRecorder, RootGuard, ScopeGuard
from scopeprof._registry import Registry
from scopeprof._report import MergedReport, ReportRow, build_report, format_duration, render, write_report
from scopeprof._tree import NodeSnapshot, ThreadLocalTree, TreeSnapshot

CONFIG = ProfilerConfig.from_env()

recorder: ActiveRecorder | NoopRecorder = (
    ActiveRecorder.from_config(CONFIG) if CONFIG.enabled else NoopRecorder()
)

enter_scope = recorder.enter_scope
begin_application_scope = recorder.begin_application_scope
flush_current_thread = recorder.flush_current_thread
report = recorder.report
print_timings = recorder.print_timings
profile = recorder.profile

__all__ = [
    "CONFIG",
    "ActiveRecorder",
    "MergedNode",
    "MergedReport",
    "NodeSnapshot",
    "NoopGuard",
    "NoopRecorder",
    "ProfilerConfig",
    "Registry",
    "ReportRow",
    "RootGuard",
    "ScopeGuard",
    "ThreadLocalTree",
    "TreeSnapshot",
    "begin_application_scope",
    "build_report",
    "enter_scope",
    "flush_current_thread",
    "format_duration",
    "merge",
    "print_timings",
    "profile",
    "recorder",
    "render",
    "report",
    "write_report",
]

__version__ = "0.1.0"
