"""Tests for dshelper.local.server."""
import numpy as np
import pandas as pd
import pytest

from dshelper.client.disclosure import DisclosureSettings
from dshelper.errors import RemoteError
from dshelper.local.server import LocalDataSource, r_class, read_table


pytestmark = pytest.mark.unit


@pytest.fixture
def server():
    frame = pd.DataFrame({
        "id": [1, 2, 3, 4, 5, 6],
        "age": [1.0, 3.0, 2.0, np.nan, 5.0, 4.0],
        "sex": pd.Categorical(["f", "f", "f", "m", "m", "m"]),
        "ok": [True, False, True, True, False, True],
    })
    return LocalDataSource("cohort1", {"D": frame})


class TestRClass:
    def test_classes(self, server):
        assert r_class(None) == "NULL"
        assert r_class(server.get("D")) == "data.frame"
        assert r_class(server.get("D")["sex"]) == "factor"
        assert r_class(server.get("D")["age"]) == "numeric"
        assert r_class(server.get("D")["id"]) == "integer"
        assert r_class(server.get("D")["ok"]) == "logical"
        assert r_class(pd.Series(["a"])) == "character"


class TestAggregate:
    def test_class_of_missing_column_is_null(self, server):
        assert server.aggregate('classDS("D$nope")') == "NULL"

    def test_length(self, server):
        assert server.aggregate('lengthDS("D")') == 4
        assert server.aggregate('lengthDS("D$age")') == 6
        assert server.aggregate('lengthDS("D$nope")') == 0

    def test_dim_and_colnames(self, server):
        assert server.aggregate('dimDS("D")') == (6, 4)
        assert server.aggregate('colnamesDS("D")') == ["id", "age", "sex", "ok"]

    def test_missing_counts(self, server):
        assert server.aggregate('numNaDS("D$age")') == 1
        assert server.aggregate('isNaDS("D$age")') is False

    def test_table_and_levels(self, server):
        assert server.aggregate('levelsDS("D$sex")') == ["f", "m"]
        assert server.aggregate('table1DDS("D$sex")') == {"f": 3, "m": 3}

    def test_small_table_cell_refused(self):
        frame = pd.DataFrame({"sex": pd.Categorical(["f", "f", "f", "m"])})
        source = LocalDataSource("c", {"D": frame})
        with pytest.raises(RemoteError, match="nfilter.tab"):
            source.aggregate('table1DDS("D$sex")')

    def test_mean(self, server):
        reply = server.aggregate('meanDS("D$age")')
        assert reply["EstimatedMean"] == pytest.approx(3.0)
        assert reply["Nmissing"] == 1
        assert reply["Nvalid"] == 5
        assert reply["Ntotal"] == 6

    def test_var_sums(self, server):
        reply = server.aggregate('varDS("D$age")')
        assert reply["Sum"] == pytest.approx(15.0)
        assert reply["SumOfSquares"] == pytest.approx(55.0)

    def test_quantile_mean(self, server):
        reply = server.aggregate('quantileMeanDS("D$age")')
        assert reply["50%"] == pytest.approx(3.0)
        assert reply["Mean"] == pytest.approx(3.0)
        assert list(reply) == ["5%", "10%", "25%", "50%", "75%", "90%", "95%", "Mean"]

    def test_too_few_valid_values_refused(self):
        source = LocalDataSource("c", {"D": pd.DataFrame({"x": [1.0, np.nan, np.nan]})})
        with pytest.raises(RemoteError, match="valid values"):
            source.aggregate('meanDS("D$x")')

    def test_non_function_refused(self, server):
        with pytest.raises(RemoteError, match="must be function calls"):
            server.aggregate("D")

    def test_unknown_function_refused(self, server):
        with pytest.raises(RemoteError, match="not an aggregate function"):
            server.aggregate('readRDS("D")')

    def test_error_carries_cohort(self, server):
        with pytest.raises(RemoteError) as info:
            server.aggregate('dimDS("nothing")')
        assert info.value.cohort == "cohort1"
        assert "object 'nothing' not found" in str(info.value)

    def test_rm(self, server):
        server.assign("x", "D$age*2")
        reply = server.aggregate('rmDS(c("x", "y"))')
        assert reply == {"deleted": ["x"], "missing": ["y"]}
        assert server.symbols == ["D"]

    def test_disclosure_settings(self, server):
        reply = server.aggregate("listDisclosureSettingsDS()")
        assert reply["nfilter_subset"] == 3


class TestAssign:
    def test_long_name_refused(self, server):
        with pytest.raises(RemoteError, match="stringShort"):
            server.assign("a" * 21, "D$age")

    def test_arithmetic(self, server):
        server.assign("d", "((D$age-3)^2)^0.5")
        assert server.get("d").tolist()[:3] == [2.0, 0.0, 1.0]

    def test_arithmetic_on_factor_refused(self, server):
        with pytest.raises(RemoteError, match="non-numeric"):
            server.assign("x", "D$sex*2")

    def test_as_numeric_factor_codes(self, server):
        server.assign("s", 'asNumericDS("D$sex")')
        assert server.get("s").tolist() == [1.0, 1.0, 1.0, 2.0, 2.0, 2.0]

    def test_as_numeric_numeric_labels(self):
        source = LocalDataSource("c", {"D": pd.DataFrame({"x": pd.Categorical(["10", "2", "10"])})})
        source.assign("x", 'asNumericDS("D$x")')
        assert source.get("x").tolist() == [10.0, 2.0, 10.0]

    def test_replace_na(self, server):
        server.assign("r", 'replaceNaDS("D$age", -99999)')
        assert server.get("r").tolist()[3] == -99999

    def test_boole(self, server):
        server.assign("b", 'BooleDS("D$age", 2, 6, "NA", TRUE)')
        values = server.get("b").tolist()
        assert values[:3] == [0.0, 1.0, 1.0]
        assert np.isnan(values[3])

    def test_boole_na_assign(self, server):
        server.assign("b", 'BooleDS("D$age", "2", 6, "0", TRUE)')
        assert server.get("b").tolist()[3] == 0.0

    def test_data_frame_later_column_wins(self, server):
        server.assign("age", "D$age*0")
        server.assign("E", 'dataFrameDS(c("D", "age"))')
        frame = server.get("E")
        assert list(frame.columns) == ["id", "age", "sex", "ok"]
        assert frame["age"].fillna(0).tolist() == [0.0] * 6

    def test_data_frame_length_mismatch(self, server):
        server.assign("one", 'repDS(1, 2, 1)')
        with pytest.raises(RemoteError, match="Cannot bind"):
            server.assign("E", 'dataFrameDS(c("D", "one"))')

    def test_subset_keep_cols(self, server):
        server.assign("S", 'dataFrameSubsetDS2("D", "D$age", 2, 6, c(0, 1), NULL, FALSE)')
        frame = server.get("S")
        assert list(frame.columns) == ["id", "age"]
        assert frame["id"].tolist() == [2, 3, 5, 6]

    def test_subset_keep_nas(self, server):
        server.assign("S", 'dataFrameSubsetDS2("D", "D$age", 2, 6, NULL, NULL, TRUE)')
        assert server.get("S")["id"].tolist() == [2, 3, 4, 5, 6]

    def test_small_subset_refused(self, server):
        with pytest.raises(RemoteError, match="nfilter.subset"):
            server.assign("S", 'dataFrameSubsetDS2("D", "D$age", 5, 6, NULL, NULL, FALSE)')

    def test_empty_subset_allowed(self, server):
        server.assign("S", 'dataFrameSubsetDS2("D", "D$age", 50, 6, NULL, NULL, FALSE)')
        assert len(server.get("S")) == 0

    def test_sort(self, server):
        server.assign("S", 'dataFrameSortDS("D", "D$age", FALSE)')
        assert server.get("S")["id"].tolist() == [1, 3, 2, 6, 5, 4]
        server.assign("S", 'dataFrameSortDS("D", "D$age", TRUE)')
        assert server.get("S")["id"].tolist() == [5, 6, 2, 3, 1, 4]

    def test_reshape_wide(self):
        long = pd.DataFrame({
            "id": [1, 1, 2, 2],
            "t": [1.0, 2.0, 1.0, 2.0],
            "y": [10.0, 11.0, 20.0, 21.0],
            "grp": [7, 7, 8, 8],
        })
        source = LocalDataSource("c", {"L": long})
        source.assign("W", 'reShapeDS("L", "t", "id", c("y"), "wide")')
        wide = source.get("W")
        assert list(wide.columns) == ["id", "grp", "y.1", "y.2"]
        assert wide["y.2"].tolist() == [11.0, 21.0]

    def test_merge_outer_with_suffixes(self):
        left = pd.DataFrame({"id": [1, 2, 3], "flag": [1, 1, 1], "a": [1.0, 2.0, 3.0]})
        right = pd.DataFrame({"id": [2, 3, 4], "flag": [1, 1, 1], "b": [5.0, 6.0, 7.0]})
        source = LocalDataSource("c", {"X": left, "Y": right})
        source.assign("M", 'mergeDS("X", "Y", c("id"), c("id"), TRUE, TRUE)')
        merged = source.get("M")
        assert merged["id"].tolist() == [1, 2, 3, 4]
        assert list(merged.columns) == ["id", "flag.x", "a", "flag.y", "b"]

    def test_merge_suffix_already_taken(self):
        left = pd.DataFrame({"id": [1, 2, 3], "c.x": [1, 1, 1], "c.y": [1, 1, 1], "c": [1, 1, 1]})
        right = pd.DataFrame({"id": [1, 2, 3], "c": [0, 0, 0]})
        source = LocalDataSource("c", {"X": left, "Y": right})
        source.assign("M", 'mergeDS("X", "Y", c("id"), c("id"), TRUE, TRUE)')
        assert list(source.get("M").columns) == ["id", "c.x", "c.y", "c.x1", "c.y1"]

    def test_rep(self, server):
        server.assign("r", "repDS(1, 4, 1)")
        assert server.get("r").tolist() == [1, 1, 1, 1]


class TestFromPath:
    def test_single_file(self, tmp_path):
        path = tmp_path / "cohort.csv"
        pd.DataFrame({"id": [1, 2, 3], "sex": ["f", "m", "f"]}).to_csv(path, index=False)
        source = LocalDataSource.from_path("c", path)
        assert source.symbols == ["D"]
        assert source.aggregate('classDS("D$sex")') == "factor"

    def test_directory(self, tmp_path):
        pd.DataFrame({"x": [1]}).to_csv(tmp_path / "one.csv", index=False)
        pd.DataFrame({"y": [2]}).to_csv(tmp_path / "two.csv", index=False)
        (tmp_path / "notes.txt").write_text("not a table")
        source = LocalDataSource.from_path("c", tmp_path)
        assert source.symbols == ["one", "two"]

    def test_text_columns_become_factors(self, tmp_path):
        path = tmp_path / "cohort.csv"
        pd.DataFrame({"id": [1, 2], "sex": ["f", "m"]}).to_csv(path, index=False)
        frame = read_table(path)
        assert isinstance(frame["sex"].dtype, pd.CategoricalDtype)
        assert frame["id"].dtype.kind == "i"

    def test_unreadable_format(self, tmp_path):
        with pytest.raises(ValueError, match="Cannot read 'cohort.xlsx'"):
            read_table(tmp_path / "cohort.xlsx")

    def test_missing_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            LocalDataSource.from_path("c", tmp_path / "absent.csv")

    def test_custom_settings(self):
        settings = DisclosureSettings(nfilter_subset=1)
        source = LocalDataSource("c", {"D": pd.DataFrame({"x": [1.0, 2.0]})}, settings=settings)
        source.assign("S", 'dataFrameSubsetDS2("D", "D$x", 2, 1, NULL, NULL, FALSE)')
        assert len(source.get("S")) == 1
