"""Checks and housekeeping against the remote data catalogue."""

from __future__ import annotations

import logging
import warnings
from collections.abc import Sequence

from dshelper.client.connections import Connections, find_connections
from dshelper.client.expression import ref
from dshelper.client.verbs import ds_colnames, ds_data_frame_subset, ds_ls, ds_rm

logger = logging.getLogger(__name__)


def does_df_exist(df: str, conns: Connections | None = None) -> None:
    """Raise if data frame *df* is absent from any cohort.

    Raises:
        ValueError: Naming the cohorts that lack *df*.
    """
    conns = find_connections() if conns is None else conns
    objects = ds_ls(conns)
    absent = [name for name, found in objects.items() if df not in found]
    if absent:
        raise ValueError(
            f"The data frame '{df}' is not present in the following cohort(s): "
            + ", ".join(absent)
        )


def do_vars_exist(
    df: str,
    variables: Sequence[str],
    conns: Connections | None = None,
) -> None:
    """Check that *variables* are columns of *df*.

    A variable missing from some cohorts only triggers a warning; a variable
    missing from every cohort is an error.

    Raises:
        ValueError: If *df* is missing anywhere, or a variable is missing
            everywhere.
    """
    conns = find_connections() if conns is None else conns
    does_df_exist(df, conns)
    columns = ds_colnames(df, conns)

    nowhere: list[str] = []
    for var in variables:
        lacking = [name for name, cols in columns.items() if var not in cols]
        if len(lacking) == len(columns):
            nowhere.append(var)
        elif lacking:
            msg = (
                f"Variable '{var}' is not present in '{df}' in the following "
                f"cohort(s): {', '.join(lacking)}"
            )
            logger.warning(msg)
            warnings.warn(msg, UserWarning, stacklevel=2)

    if nowhere:
        raise ValueError(
            f"The following variable(s) are not present in '{df}' in any cohort: "
            + ", ".join(nowhere)
        )


def find_vars_index(
    df: str,
    variables: Sequence[str],
    conns: Connections | None = None,
) -> dict[str, list[int]]:
    """0-based positions of *variables* among the columns of *df*, per cohort.

    Positions follow column order; absent variables are skipped.
    """
    conns = find_connections() if conns is None else conns
    wanted = set(variables)
    return {
        name: [i for i, col in enumerate(cols) if col in wanted]
        for name, cols in ds_colnames(df, conns).items()
    }


def drop_cols(
    df: str,
    variables: Sequence[str],
    new_df_name: str,
    type: str = "remove",
    comp_var: str = "child_id",
    conns: Connections | None = None,
) -> None:
    """Remove (or keep only) *variables* of *df*, writing *new_df_name*.

    Works through a subset whose condition ``comp_var == comp_var`` keeps
    every row, missing values included.

    Raises:
        ValueError: If *type* is unknown or *comp_var* is not a column.
    """
    if type not in ("remove", "keep"):
        raise ValueError(f"type must be 'remove' or 'keep', got '{type}'")
    conns = find_connections() if conns is None else conns
    wanted = set(variables)
    for name, cols in ds_colnames(df, conns).items():
        if comp_var not in cols:
            raise ValueError(f"'{comp_var}' is not a column of '{df}' in '{name}'")
        if type == "keep":
            positions = [i for i, col in enumerate(cols) if col in wanted]
        else:
            positions = [i for i, col in enumerate(cols) if col not in wanted]
        ds_data_frame_subset(
            df_name=df,
            v1_name=ref(df, comp_var),
            v2_name=ref(df, comp_var),
            op="==",
            newobj=new_df_name,
            conns=conns.subset(name),
            keep_cols=positions,
            keep_nas=True,
        )


def tidy_env(
    obj: Sequence[str],
    type: str = "remove",
    conns: Connections | None = None,
) -> dict[str, list[str]]:
    """Remove *obj* from each cohort, or everything except *obj*.

    Returns the removed object names per cohort.
    """
    if type not in ("remove", "keep"):
        raise ValueError(f"type must be 'remove' or 'keep', got '{type}'")
    conns = find_connections() if conns is None else conns
    if type == "remove":
        replies = ds_rm(list(obj), conns)
        return {name: reply["deleted"] for name, reply in replies.items()}

    keep = set(obj)
    removed: dict[str, list[str]] = {}
    for name, found in ds_ls(conns).items():
        doomed = [o for o in found if o not in keep]
        if doomed:
            ds_rm(doomed, conns.subset(name))
        removed[name] = doomed
    return removed
