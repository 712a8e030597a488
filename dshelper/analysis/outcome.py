"""Derivation of single-time-point outcomes from repeated measures.

Many analyses need an outcome measured within an age band, e.g. BMI between
ages 10 and 14.  :func:`make_outcome` builds one variable per band on every
cohort: it flags the measurements falling in each band, subsets them, picks
one measurement per subject, reshapes to wide form and merges the bands into
a single data frame.  Only the derived data frame is left on the servers.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Sequence
from typing import Literal

import pandas as pd
from pydantic import BaseModel, field_validator, model_validator

from dshelper.analysis.base import OutcomeResult
from dshelper.analysis.checks import do_vars_exist, drop_cols, find_vars_index, tidy_env
from dshelper.analysis.progress import StepProgress
from dshelper.client.connections import Connections, find_connections
from dshelper.client.expression import format_number, ref
from dshelper.client.verbs import (
    ds_as_numeric,
    ds_assign,
    ds_boole,
    ds_class,
    ds_colnames,
    ds_data_frame,
    ds_data_frame_sort,
    ds_data_frame_subset,
    ds_is_na,
    ds_length,
    ds_list_disclosure_settings,
    ds_ls,
    ds_make,
    ds_mean,
    ds_merge,
    ds_rep,
    ds_replace_na,
    ds_reshape,
)
from dshelper.config import DEFAULT_SETTINGS, HelperSettings
from dshelper.errors import DisclosureError, NoDataError

logger = logging.getLogger(__name__)

# Comparison operators for the lower and upper bound of each band
BAND_ACTIONS: dict[str, tuple[str, str]] = {
    "g_l": (">", "<"),
    "ge_le": (">=", "<="),
    "g_le": (">", "<="),
    "ge_l": (">=", "<"),
}

OP_TAGS = {">": "gt", ">=": "gte", "<": "lt", "<=": "lte"}

STEPS = [
    "Checking input data",
    "Defining subsets",
    "Creating subsets",
    "Dealing with subjects with multiple observations within age bands",
    "Reshaping to wide format",
    "Creating final dataset",
    "Removing temporary objects",
]

BAND_COLUMNS = ["varname", "value", "op", "new_df_name"]


class OutcomeRequest(BaseModel):
    """Arguments of :func:`make_outcome`, validated before any remote call."""

    df: str
    outcome: str
    age_var: str
    bands: list[float]
    band_action: Literal["g_l", "ge_le", "g_le", "ge_l"]
    mult_action: Literal["earliest", "latest", "nearest"]
    mult_vals: list[float] | None = None
    keep_original: bool = False
    df_name: str | None = None
    id_var: str = DEFAULT_SETTINGS.default_id_var

    @field_validator("bands")
    @classmethod
    def _check_bands(cls, bands: list[float]) -> list[float]:
        if len(bands) == 0 or len(bands) % 2 != 0:
            raise ValueError(
                "The length of the vector provided to the 'bands' argument is "
                "not an even number"
            )
        if any(b < 0 for b in bands):
            raise ValueError("Band values must not be negative")
        return bands

    @model_validator(mode="after")
    def _check_mult_vals(self) -> "OutcomeRequest":
        if self.mult_action == "nearest":
            if self.mult_vals is None:
                raise ValueError(
                    "Please specify the values to choose observations nearest to "
                    "using the argument 'mult_vals'"
                )
            if len(self.mult_vals) != len(self.bands) // 2:
                raise ValueError(
                    f"'mult_vals' needs one value per band ({len(self.bands) // 2}), "
                    f"got {len(self.mult_vals)}"
                )
        return self

    @property
    def pairs(self) -> list[tuple[float, float]]:
        return [
            (self.bands[i], self.bands[i + 1]) for i in range(0, len(self.bands), 2)
        ]


def band_table(outcome: str, bands: Sequence[float], band_action: str) -> pd.DataFrame:
    """One row per band bound: band name, bound value, operator and the name
    of the remote boolean built from it."""
    if band_action not in BAND_ACTIONS:
        raise ValueError(
            f"Unknown band_action '{band_action}'. "
            f"Supported: {sorted(BAND_ACTIONS.keys())}"
        )
    lower_op, upper_op = BAND_ACTIONS[band_action]
    rows: list[dict] = []
    for i in range(0, len(bands), 2):
        low, high = bands[i], bands[i + 1]
        varname = f"{outcome}_{format_number(low)}_{format_number(high)}"
        for value, op in ((low, lower_op), (high, upper_op)):
            rows.append(
                {
                    "varname": varname,
                    "value": value,
                    "op": op,
                    "new_df_name": f"{outcome}{OP_TAGS[op]}{format_number(value)}",
                }
            )
    return pd.DataFrame(rows, columns=BAND_COLUMNS)


def make_outcome(
    df: str | None = None,
    outcome: str | None = None,
    age_var: str | None = None,
    bands: Sequence[float] | None = None,
    band_action: str | None = None,
    mult_action: str | None = None,
    mult_vals: Sequence[float] | None = None,
    keep_original: bool = False,
    df_name: str | None = None,
    conns: Connections | None = None,
    id_var: str | None = None,
    settings: HelperSettings | None = None,
) -> OutcomeResult:
    """Derive one outcome variable per age band from repeated measures.

    Parameters
    ----------
    df:
        Long-format data frame on the servers, one row per measurement.
    outcome:
        Repeated-measures outcome variable.
    age_var:
        Age at measurement.
    bands:
        Alternating lower and upper band bounds, e.g. ``[0, 2, 2, 5]``.
    band_action:
        How the bounds are evaluated: ``"g_l"`` (> lower, < upper),
        ``"ge_le"`` (>=, <=), ``"g_le"`` (>, <=) or ``"ge_l"`` (>=, <).
    mult_action:
        Which measurement to keep when a subject has several in a band:
        ``"earliest"``, ``"latest"`` or ``"nearest"`` to *mult_vals*.
    mult_vals:
        One reference age per band, required for ``"nearest"``.
    keep_original:
        Merge the derived variables back with *df*.
    df_name:
        Name of the derived data frame; ``<outcome>_derived`` by default.
    id_var:
        Subject identifier; ``settings.default_id_var`` when ``None``.

    Returns
    -------
    OutcomeResult
        Name of the derived data frame and which bands were available on
        which cohort.
    """
    if df is None:
        raise ValueError("Please specify a data frame")
    if outcome is None:
        raise ValueError("Please specify an outcome variable")
    if age_var is None:
        raise ValueError("Please specify an age variable")
    if bands is None:
        raise ValueError("Please specify age bands which will be used to create the subset(s)")
    if band_action is None:
        raise ValueError(
            "Please specify how you want to evaluate the age bands using argument 'band_action'"
        )
    if mult_action is None:
        raise ValueError(
            "Please specify how you want to deal with multiple observations within "
            "an age bracket using the argument 'mult_action'"
        )

    settings = settings or DEFAULT_SETTINGS
    id_var = id_var or settings.default_id_var
    request = OutcomeRequest(
        df=df,
        outcome=outcome,
        age_var=age_var,
        bands=list(bands),
        band_action=band_action,
        mult_action=mult_action,
        mult_vals=None if mult_vals is None else list(mult_vals),
        keep_original=keep_original,
        df_name=df_name,
        id_var=id_var,
    )
    conns = find_connections() if conns is None else conns
    sentinel = format_number(settings.na_sentinel)
    progress = StepProgress(STEPS, logger=logger)

    logger.info("This may take some time depending on the number and size of datasets")

    # ------------------------------------------------------------------
    # 1. Check input data
    # ------------------------------------------------------------------
    with progress.step(STEPS[0]):
        start_objs = ds_ls(conns)
        do_vars_exist(df, [outcome, age_var], conns)

        classes = ds_class(ref(df, outcome), conns)
        distinct = set(classes.values())
        if len(distinct) > 1:
            raise ValueError(
                "The outcome variable does not have the same class in all cohorts "
                f"({classes}). Please fix this and run again."
            )
        if distinct == {"character"}:
            raise ValueError(
                "The outcome variable is class 'character'. Please provide either a "
                "numeric, integer or factor variable."
            )

        # Cohorts with some outcome data
        outcome_n = f"{outcome}_n"
        ds_as_numeric(ref(df, outcome), outcome_n, conns)
        ds_replace_na(outcome_n, settings.na_sentinel, "na_replaced", conns)
        ds_boole("na_replaced", sentinel, ">", "outcome_comp", conns)
        comp_means = ds_mean("outcome_comp", conns)
        nonmissing = {
            name: bool(comp_means.loc[name, "EstimatedMean"] > 0) for name in conns.names
        }
        if not any(nonmissing.values()):
            raise NoDataError("None of the cohorts have available outcome data")
        lacking = [name for name, ok in nonmissing.items() if not ok]
        if lacking:
            msg = (
                f"No valid data on '{outcome}' available for the following "
                f"cohort(s): {', '.join(lacking)}"
            )
            logger.warning(msg)
            warnings.warn(msg, UserWarning, stacklevel=2)

        age_missing = ds_is_na(ref(df, age_var), conns)
        no_age = [name for name, missing in age_missing.items() if missing]
        if no_age:
            raise ValueError(
                "No valid data on age of measurement available for the following "
                f"cohort(s): {', '.join(no_age)}"
            )

        valid_coh = [name for name in conns.names if nonmissing[name]]
        valid_conns = conns.subset(valid_coh)

        ds_as_numeric(ref(df, age_var), "age", valid_conns)
        new_df = f"{df}{settings.working_suffix}"
        ds_data_frame([df, "age", "outcome_comp"], new_df, valid_conns)

        # Keep only the variables we need
        indices = find_vars_index(new_df, [id_var, outcome, "age", "outcome_comp"], valid_conns)
        for name, positions in indices.items():
            ds_data_frame_subset(
                df_name=new_df,
                v1_name="outcome_comp",
                v2_name=sentinel,
                op=">=",
                newobj=new_df,
                conns=valid_conns.subset(name),
                keep_cols=positions,
                keep_nas=True,
            )

        cats = band_table(outcome, request.bands, band_action)
        longest = int(cats["varname"].str.len().max())
        if longest + settings.name_suffix_reserve > settings.max_name_length:
            limit = settings.max_name_length - settings.name_suffix_reserve
            raise DisclosureError(
                f"Due to disclosure settings, the band names built from the outcome "
                f"and the bands ('{outcome}_<lower>_<upper>') must be no more than "
                f"{limit} characters; the longest here is {longest}. Rename the "
                f"outcome to something shorter (three characters is a good rule "
                f"of thumb) and run again."
            )

    # ------------------------------------------------------------------
    # 2. Define subsets
    # ------------------------------------------------------------------
    with progress.step(STEPS[1]):
        for row in cats.itertuples(index=False):
            ds_boole(ref(new_df, "age"), row.value, row.op, row.new_df_name, valid_conns)

        conditions = cats.groupby("varname", sort=False)["new_df_name"].agg("*".join)
        for varname, condition in conditions.items():
            ds_assign(condition, varname, valid_conns)

        band_means = {varname: ds_mean(varname, valid_conns) for varname in conditions.index}
        disclosure = ds_list_disclosure_settings(valid_conns)

        # A band is available where its subset would pass the subset filter
        availability_rows: list[dict] = []
        to_subset: list[tuple[str, str]] = []
        for varname, means in band_means.items():
            row = {"varname": varname}
            for cohort in valid_coh:
                min_perc = disclosure[cohort].nfilter_subset / means.loc[cohort, "Ntotal"]
                available = means.loc[cohort, "EstimatedMean"] > min_perc
                row[cohort] = "yes" if available else "no"
                if available:
                    to_subset.append((varname, cohort))
            availability_rows.append(row)
        availability = pd.DataFrame(availability_rows, columns=["varname", *valid_coh])

        if not to_subset:
            raise NoDataError("There is no data available within the specified bands")

    # ------------------------------------------------------------------
    # 3. Create subsets
    # ------------------------------------------------------------------
    with progress.step(STEPS[2]):
        for varname, cohort in to_subset:
            ds_data_frame_subset(
                df_name=new_df,
                v1_name=varname,
                v2_name="1",
                op="==",
                newobj=f"{varname}_a",
                conns=valid_conns.subset(cohort),
                keep_nas=False,
            )

    # ------------------------------------------------------------------
    # 4. Pick one observation per subject
    # ------------------------------------------------------------------
    with progress.step(STEPS[3]):
        if request.mult_action == "nearest":
            ref_vals = dict(zip(conditions.index, request.mult_vals))
            for varname, cohort in to_subset:
                single = valid_conns.subset(cohort)
                subset_name = f"{varname}_a"
                sort_df = f"{varname}_y"
                ref_val = format_number(ref_vals[varname])
                dif_val = f"d_{ref_val}"
                ds_make(f"(({subset_name}$age-{ref_val})^2)^0.5", dif_val, single)
                ds_data_frame([subset_name, dif_val], sort_df, single)
                ds_data_frame_sort(
                    sort_df, ref(sort_df, dif_val), subset_name, single,
                    sort_descending=False,
                )
        else:
            descending = request.mult_action == "latest"
            for varname, cohort in to_subset:
                subset_name = f"{varname}_a"
                ds_data_frame_sort(
                    subset_name, ref(subset_name, "age"), subset_name,
                    valid_conns.subset(cohort), sort_descending=descending,
                )

    # ------------------------------------------------------------------
    # 5. Reshape to wide format
    # ------------------------------------------------------------------
    with progress.step(STEPS[4]):
        for varname, cohort in to_subset:
            single = valid_conns.subset(cohort)
            subset_name = f"{varname}_a"
            label = varname.rsplit("_", 1)[-1]
            age_cat_name = f"{varname}_age"
            wide = f"{varname}_wide"
            ds_assign(f"({subset_name}$age*0)+{label}", age_cat_name, single)
            ds_data_frame([subset_name, age_cat_name], f"{varname}_c", single)
            ds_reshape(
                f"{varname}_c", age_cat_name, id_var, [outcome, "age"], wide, single,
            )
            columns = ds_colnames(wide, single)[cohort]
            keep = [c for c in columns if ".NA" not in c]
            drop_cols(wide, keep, wide, type="keep", comp_var=id_var, conns=single)

    # ------------------------------------------------------------------
    # 6. Merge bands into the final data frame
    # ------------------------------------------------------------------
    out_name = request.df_name or f"{outcome}{settings.derived_suffix}"
    with progress.step(STEPS[5]):
        frames: dict[str, list[str]] = {}
        for varname, cohort in to_subset:
            frames.setdefault(cohort, []).append(f"{varname}_wide")
        made = [c for c in valid_coh if c in frames]

        for cohort in sorted(frames):
            single = valid_conns.subset(cohort)
            names = frames[cohort]
            if len(names) == 1:
                ds_data_frame(names, out_name, single)
                continue
            ds_merge(names[0], names[1], id_var, id_var, out_name, single, all_x=True, all_y=True)
            for extra in names[2:]:
                ds_merge(out_name, extra, id_var, id_var, out_name, single, all_x=True, all_y=True)

        if request.keep_original:
            ds_merge(
                out_name, df, id_var, id_var, out_name, conns.subset(made),
                all_x=True, all_y=True,
            )

    # ------------------------------------------------------------------
    # 7. Tidy up
    # ------------------------------------------------------------------
    with progress.step(STEPS[6]):
        made_conns = conns.subset(made)
        columns = ds_colnames(out_name, made_conns)
        lengths = ds_length(ref(out_name, id_var), made_conns)
        for cohort in made:
            single = made_conns.subset(cohort)
            ds_rep(1, lengths[cohort], "tmp_id", single)
            keep = [i for i, c in enumerate(columns[cohort]) if "outcome_comp" not in c]
            ds_data_frame_subset(
                df_name=out_name,
                v1_name="tmp_id",
                v2_name="1",
                op="==",
                newobj=out_name,
                conns=single,
                keep_cols=keep,
                keep_nas=True,
            )

        for cohort in conns.names:
            tidy_env(
                [*start_objs[cohort], out_name], type="keep", conns=conns.subset(cohort),
            )

    logger.info(
        "Data frame '%s' created containing the following variables:\n%s",
        out_name, availability.to_string(index=False),
    )
    logger.info(
        "Use get_stats to check that all values are plausible, and that the 5th "
        "and 95th percentiles fall within the specified bands."
    )

    return OutcomeResult(
        name=out_name,
        availability=availability,
        cohorts=made,
        steps=progress.summary(),
    )
