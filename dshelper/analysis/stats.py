"""Descriptive statistics across cohorts in long form.

:func:`get_stats` summarises variables of a remote data frame on every
cohort and adds a ``combined`` row per variable.  A variable that is absent
from a cohort does not stop the run; that cohort is reported with no valid
observations instead.
"""
from __future__ import annotations

import logging
import warnings
from collections.abc import Sequence

import numpy as np
import pandas as pd

from dshelper.analysis.base import StatsResult
from dshelper.analysis.checks import do_vars_exist
from dshelper.client.connections import Connections, find_connections
from dshelper.client.expression import ref
from dshelper.client.verbs import (
    VariableSummary,
    ds_class,
    ds_dim,
    ds_length,
    ds_list_disclosure_settings,
    ds_num_na,
    ds_quantile_mean,
    ds_summary,
    ds_var,
)
from dshelper.config import DEFAULT_SETTINGS, HelperSettings

logger = logging.getLogger(__name__)

CATEGORICAL_COLUMNS = [
    "variable", "category", "value", "cohort", "cohort_n", "valid_n",
    "perc_valid", "perc_total",
]
CONTINUOUS_COLUMNS = [
    "cohort", "variable", "mean", "perc_5", "perc_50", "perc_95", "std_dev",
    "valid_n", "cohort_n", "missing_n", "missing_perc",
]


def get_stats(
    df: str | None = None,
    variables: Sequence[str] | str | None = None,
    conns: Connections | None = None,
    settings: HelperSettings | None = None,
) -> StatsResult:
    """Summarise *variables* of remote data frame *df* on every cohort.

    Parameters
    ----------
    df:
        Name of the data frame on the cohort servers.
    variables:
        Column names to summarise.  Factors go to the categorical table,
        numeric and integer variables to the continuous table.
    conns:
        Cohort connections; the registered default when ``None``.

    Returns
    -------
    StatsResult
        ``categorical`` has one row per cohort, variable and category plus a
        ``missing`` category; ``continuous`` has one row per cohort and
        variable.  Both include a ``combined`` cohort.
    """
    if df is None:
        raise ValueError("Please specify a data frame")
    if variables is None or len(variables) == 0:
        raise ValueError("Please specify variable(s) to summarise")
    if isinstance(variables, str):
        variables = [variables]
    conns = find_connections() if conns is None else conns
    settings = settings or DEFAULT_SETTINGS

    do_vars_exist(df, variables, conns)

    # ------------------------------------------------------------------
    # Identify variable types
    # ------------------------------------------------------------------
    classes = {var: ds_class(ref(df, var), conns) for var in variables}
    factors = [
        v for v in variables
        if any(c == "factor" for c in classes[v].values())
    ]
    numerics = [
        v for v in variables
        if any(c in ("numeric", "integer") for c in classes[v].values())
    ]
    logger.info(
        "Summarising %d categorical and %d continuous variable(s) of '%s' on %s",
        len(factors), len(numerics), df, conns.names,
    )

    cohort_n = {name: dim[0] for name, dim in ds_dim(df, conns).items()}

    if factors:
        categorical = _categorical(df, factors, conns, cohort_n, settings)
    else:
        categorical = pd.DataFrame(columns=CATEGORICAL_COLUMNS)

    if numerics:
        continuous = _continuous(df, numerics, conns, cohort_n, settings)
    else:
        continuous = pd.DataFrame(columns=CONTINUOUS_COLUMNS)

    return StatsResult(categorical=categorical, continuous=continuous)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


def _summaries(
    df: str,
    var: str,
    conns: Connections,
) -> dict[str, VariableSummary | None]:
    """Per-cohort summaries; ``None`` where the variable has nothing to report.

    That covers cohorts lacking the variable and cohorts whose numeric
    variable has fewer valid values than the server's ``nfilter_tab``, such
    as columns added empty to harmonise data frames across cohorts.
    """
    x = ref(df, var)
    out: dict[str, VariableSummary | None] = {}
    for name in conns.names:
        single = conns.subset(name)
        length = ds_length(x, single, type="combine")
        if length == 0:
            out[name] = None
            continue
        if ds_class(x, single)[name] in ("numeric", "integer"):
            valid = length - ds_num_na(x, single)[name]
            limit = ds_list_disclosure_settings(single)[name].nfilter_tab
            if valid < limit:
                msg = (
                    f"'{x}' has fewer than {limit} valid values in cohort '{name}'; "
                    "it is reported as missing there"
                )
                logger.warning(msg)
                warnings.warn(msg, UserWarning, stacklevel=4)
                out[name] = None
                continue
        out[name] = ds_summary(x, single)[name]
    return out


def _percent(numerator: pd.Series, denominator: pd.Series, digits: int) -> pd.Series:
    denominator = denominator.where(denominator > 0)
    return (numerator / denominator * 100).round(digits)


def _categorical(
    df: str,
    factors: list[str],
    conns: Connections,
    cohort_n: dict[str, int],
    settings: HelperSettings,
) -> pd.DataFrame:
    rows: list[dict] = []
    for var in factors:
        summaries = _summaries(df, var, conns)
        for cohort in conns.names:
            summary = summaries[cohort]
            if summary is None or not summary.is_factor:
                rows.append(
                    {"variable": var, "category": None, "value": np.nan, "cohort": cohort}
                )
                continue
            for category in summary.categories:
                rows.append(
                    {
                        "variable": var,
                        "category": category,
                        "value": summary.counts.get(category, 0),
                        "cohort": cohort,
                    }
                )

    long = pd.DataFrame(rows)
    long["cohort_n"] = long["cohort"].map(cohort_n)

    # Combined values for each level of each variable
    combined = (
        long.dropna(subset=["category"])
        .groupby(["variable", "category"], sort=False, as_index=False)["value"]
        .sum()
    )
    combined["cohort"] = settings.combined_label
    combined["cohort_n"] = sum(cohort_n.values())
    long = pd.concat([long, combined], ignore_index=True)

    long["valid_n"] = long.groupby(["cohort", "variable"])["value"].transform("sum")
    long["missing_n"] = long["cohort_n"] - long["valid_n"]
    long["perc_valid"] = _percent(long["value"], long["valid_n"], settings.digits)
    long["perc_total"] = _percent(long["value"], long["cohort_n"], settings.digits)
    long["perc_missing"] = _percent(long["missing_n"], long["cohort_n"], settings.digits)

    # Missing becomes a category of its own
    pieces: list[pd.DataFrame] = []
    for (cohort, var), group in long.groupby(["cohort", "variable"], sort=True):
        first = group.iloc[0]
        present = group.loc[group["category"].notna(), CATEGORICAL_COLUMNS]
        if not present.empty:
            pieces.append(present)
        pieces.append(
            pd.DataFrame(
                [
                    {
                        "variable": var,
                        "category": settings.missing_label,
                        "value": first["missing_n"],
                        "cohort": cohort,
                        "cohort_n": first["cohort_n"],
                        "valid_n": first["valid_n"],
                        "perc_valid": np.nan,
                        "perc_total": first["perc_missing"],
                    }
                ],
                columns=CATEGORICAL_COLUMNS,
            )
        )
    out = pd.concat(pieces, ignore_index=True)[CATEGORICAL_COLUMNS]
    for col in ("value", "cohort_n", "valid_n"):
        out[col] = out[col].astype(int)
    return out


def _continuous(
    df: str,
    numerics: list[str],
    conns: Connections,
    cohort_n: dict[str, int],
    settings: HelperSettings,
) -> pd.DataFrame:
    rows: list[dict] = []
    available: dict[str, list[str]] = {}
    for var in numerics:
        x = ref(df, var)
        summaries = _summaries(df, var, conns)
        available[var] = [
            c for c in conns.names
            if summaries[c] is not None and not summaries[c].is_factor
        ]
        if available[var]:
            variances = ds_var(x, conns.subset(available[var]))
        for cohort in conns.names:
            row = {"cohort": cohort, "variable": var}
            if cohort in available[var]:
                quantiles = summaries[cohort].quantiles
                row.update(
                    mean=quantiles["Mean"],
                    perc_5=quantiles["5%"],
                    perc_50=quantiles["50%"],
                    perc_95=quantiles["95%"],
                    variance=variances.loc[cohort, "EstimatedVar"],
                    valid_n=int(variances.loc[cohort, "Nvalid"]),
                )
            else:
                row.update(
                    mean=np.nan, perc_5=np.nan, perc_50=np.nan, perc_95=np.nan,
                    variance=np.nan, valid_n=0,
                )
            row["cohort_n"] = cohort_n[cohort]
            rows.append(row)

    by_cohort = pd.DataFrame(rows).sort_values("variable", kind="mergesort")

    # Pooled values over the cohorts that hold data
    total_n = sum(cohort_n.values())
    pooled_rows: list[dict] = []
    for var in sorted(numerics):
        valid_n = int(by_cohort.loc[by_cohort["variable"] == var, "valid_n"].sum())
        row = {
            "cohort": settings.combined_label,
            "variable": var,
            "valid_n": valid_n,
            "cohort_n": total_n,
        }
        if available[var]:
            pool = conns.subset(available[var])
            quantiles = ds_quantile_mean(ref(df, var), pool, type="combine")
            variance = ds_var(ref(df, var), pool, type="combine")
            row.update(
                mean=quantiles["Mean"],
                perc_5=quantiles["5%"],
                perc_50=quantiles["50%"],
                perc_95=quantiles["95%"],
                variance=variance["EstimatedVar"].iloc[0],
            )
        else:
            row.update(mean=np.nan, perc_5=np.nan, perc_50=np.nan, perc_95=np.nan, variance=np.nan)
        pooled_rows.append(row)

    out = pd.concat([by_cohort, pd.DataFrame(pooled_rows)], ignore_index=True)
    out["std_dev"] = np.sqrt(out["variance"].astype(float).clip(lower=0))
    out["missing_n"] = out["cohort_n"] - out["valid_n"]
    out["missing_perc"] = _percent(out["missing_n"], out["cohort_n"], settings.digits)
    for col in ("mean", "perc_5", "perc_50", "perc_95", "std_dev"):
        out[col] = out[col].astype(float).round(settings.digits)
    for col in ("valid_n", "cohort_n", "missing_n"):
        out[col] = out[col].astype(int)
    return out[CONTINUOUS_COLUMNS]
