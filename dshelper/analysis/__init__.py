"""Analysis routines built on the remote verbs."""

from dshelper.analysis.base import OutcomeResult, StatsResult
from dshelper.analysis.checks import does_df_exist, do_vars_exist, drop_cols, find_vars_index, tidy_env
from dshelper.analysis.outcome import OutcomeRequest, make_outcome
from dshelper.analysis.stats import get_stats

__all__ = [
    "OutcomeRequest",
    "OutcomeResult",
    "StatsResult",
    "does_df_exist",
    "do_vars_exist",
    "drop_cols",
    "find_vars_index",
    "get_stats",
    "make_outcome",
    "tidy_env",
]
