"""An in-process cohort server backed by pandas.

:class:`LocalDataSource` evaluates the same expressions a remote cohort
server receives, against data frames held in memory.  It applies the
disclosure filters of :class:`DisclosureSettings`, so code that runs against
it respects the limits a real server would impose.
"""

from __future__ import annotations

import logging
import math
import operator
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from dshelper.client.connections import DataSource
from dshelper.client.disclosure import DisclosureSettings
from dshelper.client.expression import OPERATOR_SYMBOLS
from dshelper.errors import ExpressionError, RemoteError
from dshelper.local.parser import BinOp, Call, Column, Literal, Name, Negate, Node, parse

logger = logging.getLogger(__name__)

QUANTILE_LABELS: dict[str, float] = {
    "5%": 0.05,
    "10%": 0.10,
    "25%": 0.25,
    "50%": 0.50,
    "75%": 0.75,
    "90%": 0.90,
    "95%": 0.95,
}

_COMPARISONS: dict[str, Callable[[Any, Any], Any]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

_ARITHMETIC: dict[str, Callable[[Any, Any], Any]] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "^": operator.pow,
}

_READERS: dict[str, Callable[[Path], pd.DataFrame]] = {
    ".csv": pd.read_csv,
    ".parquet": pd.read_parquet,
    ".pq": pd.read_parquet,
}

# ---------------------------------------------------------------------------
# Server function registry
# ---------------------------------------------------------------------------

_AGGREGATE: dict[str, Callable[..., Any]] = {}
_ASSIGN: dict[str, Callable[..., Any]] = {}


def _aggregate(name: str):
    def register(fn):
        _AGGREGATE[name] = fn
        return fn
    return register


def _assign(name: str):
    def register(fn):
        _ASSIGN[name] = fn
        return fn
    return register


def read_table(path: Path) -> pd.DataFrame:
    """Read a CSV or parquet file; text columns come back as factors."""
    reader = _READERS.get(path.suffix.lower())
    if reader is None:
        raise ValueError(
            f"Cannot read '{path.name}'; expected one of {sorted(_READERS)}"
        )
    frame = reader(path)
    text = frame.select_dtypes(include=["object", "string"]).columns
    return frame.astype({col: "category" for col in text})


def r_class(value: Any) -> str:
    """Name of the class the server reports for *value*."""
    if value is None:
        return "NULL"
    if isinstance(value, pd.DataFrame):
        return "data.frame"
    if isinstance(value, pd.Series):
        dtype = value.dtype
        if isinstance(dtype, pd.CategoricalDtype):
            return "factor"
        if pd.api.types.is_bool_dtype(dtype):
            return "logical"
        if pd.api.types.is_integer_dtype(dtype):
            return "integer"
        if pd.api.types.is_numeric_dtype(dtype):
            return "numeric"
        return "character"
    if isinstance(value, bool):
        return "logical"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "numeric"
    if isinstance(value, str):
        return "character"
    return "list"


def _label(value: Any) -> str:
    """Text used for a time value in reshaped column names."""
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return "NA"
    if isinstance(value, (float, np.floating)) and float(value).is_integer():
        return str(int(value))
    return str(value)


class LocalDataSource(DataSource):
    """A cohort server holding its objects in a Python namespace.

    Parameters
    ----------
    name:
        Cohort name.
    tables:
        Initial objects, typically ``{"D": frame}``.
    settings:
        Disclosure filters; defaults to :class:`DisclosureSettings`.
    """

    def __init__(
        self,
        name: str,
        tables: Mapping[str, pd.DataFrame] | None = None,
        settings: DisclosureSettings | None = None,
    ) -> None:
        super().__init__(name)
        self.settings = settings or DisclosureSettings()
        self._env: dict[str, Any] = {}
        for symbol, frame in (tables or {}).items():
            self._env[symbol] = self._normalise(frame.copy())

    @classmethod
    def from_path(
        cls,
        name: str,
        path: str | Path,
        symbol: str = "D",
        settings: DisclosureSettings | None = None,
    ) -> LocalDataSource:
        """Build a server from a data file (bound to *symbol*) or a directory.

        Every file of a directory becomes an object named after its stem.
        """
        path = Path(path)
        if path.is_dir():
            tables = {
                p.stem: read_table(p)
                for p in sorted(path.iterdir())
                if p.suffix.lower() in _READERS
            }
        elif path.exists():
            tables = {symbol: read_table(path)}
        else:
            raise FileNotFoundError(f"No cohort data at {path}")
        return cls(name, tables=tables, settings=settings)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def symbols(self) -> list[str]:
        return sorted(self._env)

    def get(self, symbol: str) -> Any:
        """Return the object bound to *symbol* (for local inspection only).

        Raises:
            KeyError: If nothing is bound to *symbol*.
        """
        if symbol not in self._env:
            raise KeyError(f"Object '{symbol}' not found on '{self.name}'")
        return self._env[symbol]

    # ------------------------------------------------------------------
    # DataSource verbs
    # ------------------------------------------------------------------

    def assign(self, symbol: str, expression: str) -> None:
        if len(symbol) > self.settings.nfilter_string_short:
            raise self._error(
                f"Object name '{symbol}' is longer than nfilter.stringShort "
                f"({self.settings.nfilter_string_short})"
            )
        node = self._parse(expression)
        if isinstance(node, Call):
            fn = _ASSIGN.get(node.func)
            if fn is None:
                raise self._error(f"'{node.func}' is not an assign function")
            value = fn(self, *self._arguments(node))
        else:
            value = self._evaluate(node)
        self._env[symbol] = self._normalise(value)
        logger.debug("[%s] %s <- %s", self.name, symbol, expression)

    def aggregate(self, expression: str) -> Any:
        node = self._parse(expression)
        if not isinstance(node, Call):
            raise self._error("Aggregate calls must be function calls")
        fn = _AGGREGATE.get(node.func)
        if fn is None:
            raise self._error(f"'{node.func}' is not an aggregate function")
        return fn(self, *self._arguments(node))

    # ------------------------------------------------------------------
    # Aggregate functions
    # ------------------------------------------------------------------

    @_aggregate("classDS")
    def _class(self, x: str) -> str:
        return r_class(self._resolve(x))

    @_aggregate("lengthDS")
    def _length(self, x: str) -> int:
        value = self._resolve(x)
        if value is None:
            return 0
        if isinstance(value, pd.DataFrame):
            return value.shape[1]
        if isinstance(value, (pd.Series, list)):
            return len(value)
        return 1

    @_aggregate("dimDS")
    def _dim(self, x: str) -> tuple[int, int]:
        frame = self._frame(x)
        return int(frame.shape[0]), int(frame.shape[1])

    @_aggregate("colnamesDS")
    def _colnames(self, x: str) -> list[str]:
        return [str(c) for c in self._frame(x).columns]

    @_aggregate("lsDS")
    def _ls(self) -> list[str]:
        return self.symbols

    @_aggregate("isNaDS")
    def _is_na(self, x: str) -> bool:
        return bool(self._vector(x).isna().all())

    @_aggregate("numNaDS")
    def _num_na(self, x: str) -> int:
        return int(self._vector(x).isna().sum())

    @_aggregate("levelsDS")
    def _levels(self, x: str) -> list[str]:
        vector = self._factor(x)
        levels = [str(c) for c in vector.cat.categories]
        if len(levels) > self.settings.nfilter_levels_max:
            raise self._error(
                f"'{x}' has {len(levels)} levels, more than nfilter.levels.max "
                f"({self.settings.nfilter_levels_max})"
            )
        return levels

    @_aggregate("table1DDS")
    def _table1d(self, x: str) -> dict[str, int]:
        vector = self._factor(x)
        counts = vector.value_counts(sort=False, dropna=True)
        table = {str(level): int(counts.get(level, 0)) for level in vector.cat.categories}
        small = [k for k, v in table.items() if 0 < v < self.settings.nfilter_tab]
        if small:
            raise self._error(
                f"Table of '{x}' has {len(small)} cell(s) with a non-zero count "
                f"below nfilter.tab ({self.settings.nfilter_tab})"
            )
        return table

    @_aggregate("quantileMeanDS")
    def _quantile_mean(self, x: str) -> dict[str, float]:
        valid = self._numeric(x).dropna()
        self._check_valid_n(x, len(valid))
        out = {
            label: float(valid.quantile(q))
            for label, q in QUANTILE_LABELS.items()
        }
        out["Mean"] = float(valid.mean())
        return out

    @_aggregate("meanDS")
    def _mean(self, x: str) -> dict[str, float]:
        vector = self._numeric(x)
        valid = vector.dropna()
        self._check_valid_n(x, len(valid))
        return {
            "EstimatedMean": float(valid.mean()),
            "Nmissing": int(vector.isna().sum()),
            "Nvalid": len(valid),
            "Ntotal": len(vector),
        }

    @_aggregate("varDS")
    def _var(self, x: str) -> dict[str, float]:
        vector = self._numeric(x)
        valid = vector.dropna()
        self._check_valid_n(x, len(valid))
        return {
            "Sum": float(valid.sum()),
            "SumOfSquares": float((valid ** 2).sum()),
            "Nmissing": int(vector.isna().sum()),
            "Nvalid": len(valid),
            "Ntotal": len(vector),
        }

    @_aggregate("listDisclosureSettingsDS")
    def _disclosure_settings(self) -> dict:
        return self.settings.to_dict()

    @_aggregate("rmDS")
    def _rm(self, names: list[str] | str) -> dict[str, list[str]]:
        if isinstance(names, str):
            names = [names]
        deleted = [n for n in names if n in self._env]
        for n in deleted:
            del self._env[n]
        return {
            "deleted": deleted,
            "missing": [n for n in names if n not in deleted],
        }

    # ------------------------------------------------------------------
    # Assign functions
    # ------------------------------------------------------------------

    @_assign("asNumericDS")
    def _as_numeric(self, x: str) -> pd.Series:
        vector = self._vector(x)
        if isinstance(vector.dtype, pd.CategoricalDtype):
            labels = pd.to_numeric(vector.astype(object), errors="coerce")
            if labels.notna().any() or vector.isna().all():
                return labels.astype(float)
            # Non-numeric labels: use the level positions, starting at 1.
            codes = vector.cat.codes.astype(float) + 1
            return codes.where(vector.notna())
        if pd.api.types.is_numeric_dtype(vector.dtype):
            return vector.astype(float)
        return pd.to_numeric(vector, errors="coerce").astype(float)

    @_assign("replaceNaDS")
    def _replace_na(self, x: str, value: Any) -> pd.Series:
        if isinstance(value, list):
            value = value[0]
        return self._vector(x).fillna(value)

    @_assign("BooleDS")
    def _boole(
        self,
        v1: str,
        v2: Any,
        code: int,
        na_assign: str = "NA",
        numeric_output: bool = True,
    ) -> pd.Series:
        left = self._vector(v1)
        right = self._operand(v2, len(left))
        result, missing = self._compare(left, right, code)
        if numeric_output:
            result = result.astype(float)
        if na_assign == "NA":
            result = result.astype(float).where(~missing)
        elif na_assign in ("0", "1"):
            result = result.astype(float).where(~missing, float(na_assign))
        else:
            raise self._error(f"Unknown na.assign '{na_assign}'")
        return result

    @_assign("dataFrameDS")
    def _data_frame(self, names: list[str] | str) -> pd.DataFrame:
        if isinstance(names, str):
            names = [names]
        columns: dict[str, pd.Series] = {}
        n_rows: int | None = None
        for name in names:
            value = self._resolve(name)
            if value is None:
                raise self._error(f"Object '{name}' is NULL")
            if isinstance(value, pd.DataFrame):
                parts = {str(c): value[c] for c in value.columns}
            else:
                parts = {name.split("$")[-1]: self._as_series(value)}
            for col, series in parts.items():
                if n_rows is None:
                    n_rows = len(series)
                elif len(series) != n_rows:
                    raise self._error(
                        f"Cannot bind '{name}' with {len(series)} rows to "
                        f"a data frame of {n_rows} rows"
                    )
                columns[col] = series.reset_index(drop=True)
        return pd.DataFrame(columns)

    @_assign("dataFrameSubsetDS2")
    def _data_frame_subset(
        self,
        df: str,
        v1: str,
        v2: Any,
        code: int,
        keep_cols: list[int] | int | None = None,
        rm_cols: list[int] | int | None = None,
        keep_nas: bool = False,
    ) -> pd.DataFrame:
        frame = self._frame(df)
        left = self._vector(v1)
        if len(left) != len(frame):
            raise self._error(
                f"'{v1}' has length {len(left)} but '{df}' has {len(frame)} rows"
            )
        right = self._operand(v2, len(left))
        mask, missing = self._compare(left, right, code)
        mask = mask.fillna(False).astype(bool)
        if keep_nas:
            mask = mask | missing
        else:
            mask = mask & ~missing
        subset = frame.loc[mask.to_numpy()]
        if keep_cols is not None:
            subset = subset.iloc[:, self._positions(keep_cols, frame)]
        if rm_cols is not None:
            drop = set(self._positions(rm_cols, frame))
            subset = subset.iloc[:, [i for i in range(subset.shape[1]) if i not in drop]]
        if 0 < len(subset) < self.settings.nfilter_subset:
            raise self._error(
                f"Subset of '{df}' would have {len(subset)} rows, fewer than "
                f"nfilter.subset ({self.settings.nfilter_subset})"
            )
        return subset

    @_assign("dataFrameSortDS")
    def _data_frame_sort(self, df: str, key: str, descending: bool = False) -> pd.DataFrame:
        frame = self._frame(df)
        sort_key = self._vector(key)
        if len(sort_key) != len(frame):
            raise self._error(
                f"Sort key '{key}' has length {len(sort_key)} but '{df}' has "
                f"{len(frame)} rows"
            )
        order = sort_key.reset_index(drop=True).sort_values(
            ascending=not descending, kind="mergesort", na_position="last",
        ).index.to_numpy()
        return frame.iloc[order]

    @_assign("reShapeDS")
    def _reshape(
        self,
        data: str,
        timevar: str,
        idvar: str,
        v_names: list[str] | str,
        direction: str = "wide",
    ) -> pd.DataFrame:
        if direction != "wide":
            raise self._error(f"Unsupported reshape direction '{direction}'")
        if isinstance(v_names, str):
            v_names = [v_names]
        frame = self._frame(data)
        needed = [timevar, idvar, *v_names]
        absent = [c for c in needed if c not in frame.columns]
        if absent:
            raise self._error(f"Columns not found in '{data}': {absent}")

        constant = [c for c in frame.columns if c not in needed]
        wide = frame.drop_duplicates(subset=idvar, keep="first")[[idvar, *constant]]
        times = frame[timevar]
        for time in pd.unique(times):
            if pd.isna(time):
                block = frame.loc[times.isna()]
            else:
                block = frame.loc[times == time]
            block = block.drop_duplicates(subset=idvar, keep="first")[[idvar, *v_names]]
            block = block.rename(columns={v: f"{v}.{_label(time)}" for v in v_names})
            wide = wide.merge(block, on=idvar, how="left")
        return wide

    @_assign("mergeDS")
    def _merge(
        self,
        x: str,
        y: str,
        by_x: list[str] | str,
        by_y: list[str] | str,
        all_x: bool = False,
        all_y: bool = False,
    ) -> pd.DataFrame:
        left = self._frame(x)
        right = self._frame(y)
        if all_x and all_y:
            how = "outer"
        elif all_x:
            how = "left"
        elif all_y:
            how = "right"
        else:
            how = "inner"
        by_x = [by_x] if isinstance(by_x, str) else by_x
        by_y = [by_y] if isinstance(by_y, str) else by_y

        # Shared non-key columns get ".x" / ".y"; a name already taken gets a counter.
        keys = set(by_x) | set(by_y)
        shared = [c for c in left.columns if c in right.columns and c not in keys]
        taken = set(left.columns) | set(right.columns)
        rename_x: dict[str, str] = {}
        rename_y: dict[str, str] = {}
        for col in shared:
            for renames, suffix in ((rename_x, ".x"), (rename_y, ".y")):
                new, i = f"{col}{suffix}", 1
                while new in taken:
                    new, i = f"{col}{suffix}{i}", i + 1
                taken.add(new)
                renames[col] = new
        left = left.rename(columns=rename_x)
        right = right.rename(columns=rename_y)

        if by_x == by_y:
            return left.merge(right, on=by_x, how=how, sort=True)
        return left.merge(
            right, left_on=by_x, right_on=by_y, how=how, sort=True, suffixes=(".x", ".y"),
        )

    @_assign("repDS")
    def _rep(self, x1: Any, times: int, each: int = 1) -> pd.Series:
        values = x1 if isinstance(x1, list) else [x1]
        repeated = [v for v in values for _ in range(int(each))] * int(times)
        return pd.Series(repeated)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _error(self, message: str) -> RemoteError:
        return RemoteError(self.name, message)

    def _parse(self, text: str) -> Node:
        try:
            return parse(text)
        except ExpressionError as exc:
            raise self._error(str(exc)) from exc

    def _arguments(self, node: Call) -> list[Any]:
        return [self._literal(arg) for arg in node.args]

    def _literal(self, node: Node) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Negate):
            value = self._literal(node.operand)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return -value
        if isinstance(node, Call) and node.func == "c":
            return [self._literal(arg) for arg in node.args]
        raise self._error(f"Arguments of server functions must be literals, got {node}")

    def _resolve(self, text: str) -> Any:
        """Evaluate an object reference such as ``"D"`` or ``"D$bmi"``."""
        return self._evaluate(self._parse(text))

    def _evaluate(self, node: Node) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Name):
            if node.id not in self._env:
                raise self._error(f"object '{node.id}' not found")
            return self._env[node.id]
        if isinstance(node, Column):
            obj = self._evaluate(node.obj)
            if not isinstance(obj, pd.DataFrame):
                raise self._error(f"$ operator is invalid for {r_class(obj)} objects")
            if node.column not in obj.columns:
                return None
            return obj[node.column]
        if isinstance(node, Negate):
            return -self._arithmetic_operand(self._evaluate(node.operand))
        if isinstance(node, BinOp):
            left = self._arithmetic_operand(self._evaluate(node.left))
            right = self._arithmetic_operand(self._evaluate(node.right))
            if (
                isinstance(left, pd.Series)
                and isinstance(right, pd.Series)
                and len(left) != len(right)
            ):
                raise self._error(
                    f"Operands of '{node.op}' have lengths {len(left)} and {len(right)}"
                )
            return _ARITHMETIC[node.op](left, right)
        raise self._error(f"Function calls cannot be nested: {node}")

    def _arithmetic_operand(self, value: Any) -> Any:
        if value is None:
            raise self._error("Arithmetic on a NULL object")
        if isinstance(value, pd.Series):
            if pd.api.types.is_bool_dtype(value.dtype):
                return value.astype(float)
            if isinstance(value.dtype, pd.CategoricalDtype) or not pd.api.types.is_numeric_dtype(value.dtype):
                raise self._error("non-numeric argument to binary operator")
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        raise self._error(f"non-numeric argument to binary operator: {value!r}")

    def _frame(self, text: str) -> pd.DataFrame:
        value = self._resolve(text)
        if not isinstance(value, pd.DataFrame):
            raise self._error(f"'{text}' is a {r_class(value)}, not a data.frame")
        return value

    def _vector(self, text: str) -> pd.Series:
        value = self._resolve(text)
        if value is None:
            raise self._error(f"'{text}' is NULL")
        if isinstance(value, pd.DataFrame):
            raise self._error(f"'{text}' is a data.frame, not a vector")
        return self._as_series(value)

    def _factor(self, text: str) -> pd.Series:
        vector = self._vector(text)
        if not isinstance(vector.dtype, pd.CategoricalDtype):
            raise self._error(f"'{text}' is not a factor")
        return vector

    def _numeric(self, text: str) -> pd.Series:
        vector = self._vector(text)
        if pd.api.types.is_bool_dtype(vector.dtype):
            return vector.astype(float)
        if isinstance(vector.dtype, pd.CategoricalDtype) or not pd.api.types.is_numeric_dtype(vector.dtype):
            raise self._error(f"'{text}' is not numeric")
        return vector

    def _operand(self, value: Any, length: int) -> Any:
        """Right-hand side of a comparison: a number or an object of *length*."""
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                vector = self._vector(value)
                if len(vector) != length:
                    raise self._error(
                        f"'{value}' has length {len(vector)}, expected {length}"
                    )
                return vector
        raise self._error(f"Cannot compare against {value!r}")

    def _compare(self, left: pd.Series, right: Any, code: int) -> tuple[pd.Series, pd.Series]:
        """Return the comparison result and the mask of missing operands."""
        op = OPERATOR_SYMBOLS.get(code)
        if op is None:
            raise self._error(f"Unknown operator code {code}")
        if isinstance(left.dtype, pd.CategoricalDtype):
            left = left.astype(object)
        missing = left.isna()
        if isinstance(right, pd.Series):
            if isinstance(right.dtype, pd.CategoricalDtype):
                right = right.astype(object)
            right = right.reset_index(drop=True)
            missing = missing | right.isna()
        try:
            result = _COMPARISONS[op](left.reset_index(drop=True), right)
        except TypeError as exc:
            raise self._error(f"Cannot compare values with '{op}': {exc}") from exc
        return result.reset_index(drop=True), missing.reset_index(drop=True)

    @staticmethod
    def _positions(cols: list[int] | int, frame: pd.DataFrame) -> list[int]:
        positions = [cols] if isinstance(cols, int) else [int(c) for c in cols]
        return [p for p in positions if 0 <= p < frame.shape[1]]

    @staticmethod
    def _as_series(value: Any) -> pd.Series:
        if isinstance(value, pd.Series):
            return value
        if isinstance(value, list):
            return pd.Series(value)
        return pd.Series([value])

    def _check_valid_n(self, x: str, n_valid: int) -> None:
        if n_valid < self.settings.nfilter_tab:
            raise self._error(
                f"'{x}' has {n_valid} valid values, fewer than nfilter.tab "
                f"({self.settings.nfilter_tab})"
            )

    @staticmethod
    def _normalise(value: Any) -> Any:
        if isinstance(value, (pd.DataFrame, pd.Series)):
            return value.reset_index(drop=True)
        return value
