"""Client wrappers around the cohort servers' call surface.

Each function builds one or more expressions, sends them through a
:class:`Connections` and shapes the replies.  Aggregate wrappers return
values keyed by cohort; ``type="combine"`` pools the per-cohort replies on
the client.  Assign wrappers create remote objects and return ``None``.
"""

from __future__ import annotations

import math
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from dshelper.client.connections import Connections, find_connections
from dshelper.client.disclosure import DisclosureSettings
from dshelper.client.expression import build_call, operator_code

QUANTILE_COLUMNS = ["5%", "10%", "25%", "50%", "75%", "90%", "95%", "Mean"]
COMBINED = "combined"


@dataclass
class VariableSummary:
    """Summary of one variable on one cohort."""

    var_class: str
    length: int
    categories: list[str] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)
    quantiles: dict[str, float] = field(default_factory=dict)

    @property
    def is_factor(self) -> bool:
        return self.var_class == "factor"


def _connections(conns: Connections | None) -> Connections:
    return find_connections() if conns is None else conns


def _each(conns: Connections) -> Iterator[tuple[str, Connections]]:
    for name in conns.names:
        yield name, conns.subset(name)


def _check_type(type: str) -> None:
    if type not in ("split", "combine"):
        raise ValueError(f"type must be 'split' or 'combine', got '{type}'")


def _one(conns: Connections, expression: str) -> Any:
    """Aggregate on a single-cohort connection and unwrap the reply."""
    (value,) = conns.aggregate(expression).values()
    return value


# ---------------------------------------------------------------------------
# Aggregate verbs
# ---------------------------------------------------------------------------


def ds_class(x: str, conns: Connections | None = None) -> dict[str, str]:
    """Class of *x* on each cohort (``"NULL"`` where it does not exist)."""
    return _connections(conns).aggregate(build_call("classDS", x))


def ds_length(
    x: str,
    conns: Connections | None = None,
    type: str = "split",
) -> dict[str, int] | int:
    """Length of *x* per cohort, or summed across cohorts."""
    _check_type(type)
    lengths = _connections(conns).aggregate(build_call("lengthDS", x))
    if type == "combine":
        return int(sum(lengths.values()))
    return lengths


def ds_dim(x: str, conns: Connections | None = None) -> dict[str, tuple[int, int]]:
    """Rows and columns of data frame *x* on each cohort."""
    dims = _connections(conns).aggregate(build_call("dimDS", x))
    return {name: tuple(dim) for name, dim in dims.items()}


def ds_colnames(x: str, conns: Connections | None = None) -> dict[str, list[str]]:
    return _connections(conns).aggregate(build_call("colnamesDS", x))


def ds_ls(conns: Connections | None = None) -> dict[str, list[str]]:
    """Objects present on each cohort."""
    return _connections(conns).aggregate(build_call("lsDS"))


def ds_rm(x: str | Sequence[str], conns: Connections | None = None) -> dict[str, dict]:
    """Remove objects from each cohort."""
    names = [x] if isinstance(x, str) else list(x)
    return _connections(conns).aggregate(build_call("rmDS", names))


def ds_is_na(x: str, conns: Connections | None = None) -> dict[str, bool]:
    """Whether every value of *x* is missing, per cohort."""
    return _connections(conns).aggregate(build_call("isNaDS", x))


def ds_num_na(x: str, conns: Connections | None = None) -> dict[str, int]:
    return _connections(conns).aggregate(build_call("numNaDS", x))


def ds_summary(x: str, conns: Connections | None = None) -> dict[str, VariableSummary]:
    """Summarise *x* on each cohort.

    Factors report their levels and the count of each level; numeric and
    integer variables report quantiles and mean.

    Raises:
        ValueError: If *x* is of any other class on a cohort.
    """
    out: dict[str, VariableSummary] = {}
    for name, single in _each(_connections(conns)):
        var_class = _one(single, build_call("classDS", x))
        length = _one(single, build_call("lengthDS", x))
        if var_class == "factor":
            categories = _one(single, build_call("levelsDS", x))
            counts = _one(single, build_call("table1DDS", x))
            out[name] = VariableSummary(
                var_class=var_class,
                length=length,
                categories=list(categories),
                counts=dict(counts),
            )
        elif var_class in ("numeric", "integer"):
            quantiles = _one(single, build_call("quantileMeanDS", x))
            out[name] = VariableSummary(
                var_class=var_class,
                length=length,
                quantiles=dict(quantiles),
            )
        else:
            raise ValueError(
                f"'{x}' is of class '{var_class}' in '{name}'; only factor, "
                "numeric and integer variables can be summarised"
            )
    return out


def ds_mean(
    x: str,
    conns: Connections | None = None,
    type: str = "split",
) -> pd.DataFrame:
    """Mean of *x*.

    Returns a DataFrame indexed by cohort (or by ``"combined"``) with columns
    ``EstimatedMean``, ``Nmissing``, ``Nvalid`` and ``Ntotal``.  The combined
    mean is weighted by the valid n of each cohort.
    """
    _check_type(type)
    replies = _connections(conns).aggregate(build_call("meanDS", x))
    by_study = pd.DataFrame.from_dict(replies, orient="index")[
        ["EstimatedMean", "Nmissing", "Nvalid", "Ntotal"]
    ]
    if type == "split":
        return by_study
    n_valid = by_study["Nvalid"].sum()
    pooled = (by_study["EstimatedMean"] * by_study["Nvalid"]).sum() / n_valid
    return pd.DataFrame(
        {
            "EstimatedMean": [float(pooled)],
            "Nmissing": [int(by_study["Nmissing"].sum())],
            "Nvalid": [int(n_valid)],
            "Ntotal": [int(by_study["Ntotal"].sum())],
        },
        index=[COMBINED],
    )


def _variance(total: float, squares: float, n: int) -> float:
    if n < 2:
        return math.nan
    return (squares - total ** 2 / n) / (n - 1)


def ds_var(
    x: str,
    conns: Connections | None = None,
    type: str = "split",
) -> pd.DataFrame:
    """Variance of *x*.

    Returns a DataFrame indexed by cohort (or by ``"combined"``) with columns
    ``EstimatedVar``, ``Nmissing``, ``Nvalid`` and ``Ntotal``.  The combined
    variance is computed from the pooled sums and sums of squares.
    """
    _check_type(type)
    replies = _connections(conns).aggregate(build_call("varDS", x))
    raw = pd.DataFrame.from_dict(replies, orient="index")
    if type == "combine":
        raw = raw.sum().to_frame(COMBINED).T
    return pd.DataFrame(
        {
            "EstimatedVar": [
                _variance(row.Sum, row.SumOfSquares, int(row.Nvalid))
                for row in raw.itertuples()
            ],
            "Nmissing": raw["Nmissing"].astype(int),
            "Nvalid": raw["Nvalid"].astype(int),
            "Ntotal": raw["Ntotal"].astype(int),
        },
        index=raw.index,
    )


def ds_quantile_mean(
    x: str,
    conns: Connections | None = None,
    type: str = "split",
) -> pd.DataFrame | pd.Series:
    """Quantiles (5% to 95%) and mean of *x*.

    ``type="split"`` returns a DataFrame indexed by cohort.
    ``type="combine"`` returns a Series whose values are the per-cohort
    values weighted by each cohort's valid n.
    """
    _check_type(type)
    conns = _connections(conns)
    replies = conns.aggregate(build_call("quantileMeanDS", x))
    by_study = pd.DataFrame.from_dict(replies, orient="index")[QUANTILE_COLUMNS]
    if type == "split":
        return by_study
    lengths = pd.Series(conns.aggregate(build_call("lengthDS", x)))
    missing = pd.Series(conns.aggregate(build_call("numNaDS", x)))
    weights = (lengths - missing).reindex(by_study.index).astype(float)
    pooled = by_study.mul(weights, axis=0).sum() / weights.sum()
    pooled.name = COMBINED
    return pooled


def ds_list_disclosure_settings(
    conns: Connections | None = None,
) -> dict[str, DisclosureSettings]:
    replies = _connections(conns).aggregate(build_call("listDisclosureSettingsDS"))
    return {name: DisclosureSettings(**settings) for name, settings in replies.items()}


# ---------------------------------------------------------------------------
# Assign verbs
# ---------------------------------------------------------------------------


def ds_as_numeric(x_name: str, newobj: str, conns: Connections | None = None) -> None:
    _connections(conns).assign(newobj, build_call("asNumericDS", x_name))


def ds_replace_na(
    x: str,
    for_na: Any,
    newobj: str,
    conns: Connections | None = None,
) -> None:
    """Replace missing values of *x*.

    *for_na* is a single replacement value or one value per cohort.
    """
    conns = _connections(conns)
    if isinstance(for_na, (list, tuple, np.ndarray)):
        values = list(for_na)
        if len(values) != len(conns):
            raise ValueError(
                f"for_na has {len(values)} values but there are {len(conns)} cohorts"
            )
    else:
        values = [for_na] * len(conns)
    for (name, single), value in zip(_each(conns), values):
        single.assign(newobj, build_call("replaceNaDS", x, value))


def ds_boole(
    v1: str,
    v2: str | float,
    op: str,
    newobj: str,
    conns: Connections | None = None,
    na_assign: str = "NA",
    numeric_output: bool = True,
) -> None:
    """Compare *v1* with *v2* (a number or an object name) element-wise."""
    if na_assign not in ("NA", "0", "1"):
        raise ValueError(f"na_assign must be 'NA', '0' or '1', got '{na_assign}'")
    expression = build_call("BooleDS", v1, v2, operator_code(op), na_assign, numeric_output)
    _connections(conns).assign(newobj, expression)


def ds_assign(to_assign: str, newobj: str, conns: Connections | None = None) -> None:
    """Assign the arithmetic expression *to_assign* to *newobj*."""
    _connections(conns).assign(newobj, to_assign)


ds_make = ds_assign


def ds_data_frame(x: Sequence[str], newobj: str, conns: Connections | None = None) -> None:
    """Bind data frames and vectors column-wise into *newobj*.

    Columns of later objects replace earlier columns of the same name.
    """
    _connections(conns).assign(newobj, build_call("dataFrameDS", list(x)))


def ds_data_frame_subset(
    df_name: str,
    v1_name: str,
    v2_name: str | float,
    op: str,
    newobj: str,
    conns: Connections | None = None,
    keep_cols: Sequence[int] | None = None,
    rm_cols: Sequence[int] | None = None,
    keep_nas: bool = False,
) -> None:
    """Subset rows of *df_name* where ``v1 op v2``.

    *keep_cols* / *rm_cols* are 0-based column positions.
    """
    expression = build_call(
        "dataFrameSubsetDS2",
        df_name,
        v1_name,
        v2_name,
        operator_code(op),
        None if keep_cols is None else [int(c) for c in keep_cols],
        None if rm_cols is None else [int(c) for c in rm_cols],
        keep_nas,
    )
    _connections(conns).assign(newobj, expression)


def ds_data_frame_sort(
    df_name: str,
    sort_key_name: str,
    newobj: str,
    conns: Connections | None = None,
    sort_descending: bool = False,
) -> None:
    expression = build_call("dataFrameSortDS", df_name, sort_key_name, sort_descending)
    _connections(conns).assign(newobj, expression)


def ds_reshape(
    data_name: str,
    timevar_name: str,
    idvar_name: str,
    v_names: Sequence[str],
    newobj: str,
    conns: Connections | None = None,
    direction: str = "wide",
) -> None:
    """Reshape long data to wide: one row per id, ``<v>.<time>`` columns.

    Raises:
        ValueError: For any direction other than ``"wide"``.
    """
    if direction != "wide":
        raise ValueError(f"Only direction='wide' is supported, got '{direction}'")
    expression = build_call(
        "reShapeDS", data_name, timevar_name, idvar_name, list(v_names), direction,
    )
    _connections(conns).assign(newobj, expression)


def ds_merge(
    x_name: str,
    y_name: str,
    by_x_names: str | Sequence[str],
    by_y_names: str | Sequence[str],
    newobj: str,
    conns: Connections | None = None,
    all_x: bool = False,
    all_y: bool = False,
) -> None:
    by_x = [by_x_names] if isinstance(by_x_names, str) else list(by_x_names)
    by_y = [by_y_names] if isinstance(by_y_names, str) else list(by_y_names)
    expression = build_call("mergeDS", x_name, y_name, by_x, by_y, all_x, all_y)
    _connections(conns).assign(newobj, expression)


def ds_rep(
    x1: Any,
    times: int,
    newobj: str,
    conns: Connections | None = None,
    each: int = 1,
) -> None:
    _connections(conns).assign(newobj, build_call("repDS", x1, int(times), int(each)))
