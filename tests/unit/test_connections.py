"""Tests for dshelper.client.connections and the call log."""
import pandas as pd
import pytest

from dshelper.client.audit import CallLog
from dshelper.client.connections import Connections, DataSource, find_connections
from dshelper.errors import ConnectionsNotFoundError, RemoteError
from dshelper.local.server import LocalDataSource


pytestmark = pytest.mark.unit


class RecordingSource(DataSource):
    """Source that records calls and answers aggregates with its own name."""

    def __init__(self, name):
        super().__init__(name)
        self.calls = []

    def assign(self, symbol, expression):
        self.calls.append(("assign", symbol, expression))

    def aggregate(self, expression):
        self.calls.append(("aggregate", expression))
        return self.name


class TestConnections:
    def test_mapping_protocol(self):
        conns = Connections([RecordingSource("a"), RecordingSource("b")])
        assert list(conns) == ["a", "b"]
        assert len(conns) == 2
        assert conns["b"].name == "b"
        assert conns.names == ["a", "b"]
        assert repr(conns) == "Connections(['a', 'b'])"

    def test_duplicate_names_rejected(self):
        with pytest.raises(ValueError, match="Duplicate"):
            Connections([RecordingSource("a"), RecordingSource("a")])

    def test_unknown_cohort(self):
        conns = Connections([RecordingSource("a")])
        with pytest.raises(KeyError, match="not found"):
            conns["z"]

    def test_subset_keeps_requested_order(self):
        conns = Connections([RecordingSource("a"), RecordingSource("b"), RecordingSource("c")])
        assert conns.subset(["c", "a"]).names == ["c", "a"]
        assert conns.subset("b").names == ["b"]

    def test_fan_out(self):
        a, b = RecordingSource("a"), RecordingSource("b")
        conns = Connections([a, b])
        conns.assign("x", "D$age*2")
        assert conns.aggregate("lsDS()") == {"a": "a", "b": "b"}
        assert a.calls == [("assign", "x", "D$age*2"), ("aggregate", "lsDS()")]
        assert b.calls == a.calls

    def test_data_source_repr(self):
        assert repr(RecordingSource("a")) == "RecordingSource('a')"


class TestDefaultConnections:
    def test_none_registered(self):
        with pytest.raises(ConnectionsNotFoundError):
            find_connections()

    def test_register(self):
        conns = Connections([RecordingSource("a")]).register()
        assert find_connections() is conns


class TestCallLog:
    @pytest.fixture
    def log(self, tmp_path):
        return CallLog(tmp_path / "nested" / "calls.jsonl")

    def test_one_record_per_cohort(self, log):
        frame = pd.DataFrame({"x": [1.0, 2.0, 3.0]})
        conns = Connections(
            [LocalDataSource("a", {"D": frame}), LocalDataSource("b", {"D": frame})],
            call_log=log,
        )
        conns.assign("y", "D$x*2")
        conns.subset("a").aggregate('meanDS("y")')

        records = log.records()
        assert [(r.cohort, r.verb) for r in records] == [
            ("a", "assign"), ("b", "assign"), ("a", "aggregate"),
        ]
        assert records[0].symbol == "y"
        assert records[2].symbol is None
        assert all(r.ok for r in records)
        assert len(log.records(cohort="b")) == 1

    def test_refusal_is_recorded_before_raising(self, log):
        conns = Connections(
            [
                LocalDataSource("a", {"D": pd.DataFrame({"x": [1.0, 2.0, 3.0]})}),
                LocalDataSource("b", {"D": pd.DataFrame({"x": [1.0, None, None]})}),
                LocalDataSource("c", {"D": pd.DataFrame({"x": [4.0, 5.0, 6.0]})}),
            ],
            call_log=log,
        )
        with pytest.raises(RemoteError) as excinfo:
            conns.aggregate('meanDS("D$x")')
        assert excinfo.value.cohort == "b"

        assert [r.cohort for r in log.records()] == ["a", "b"]
        failed = log.failures()
        assert [r.cohort for r in failed] == ["b"]
        assert "fewer than nfilter.tab" in failed[0].error

    def test_empty_log(self, log):
        assert log.path.parent.exists()
        assert log.records() == []
        assert log.failures() == []
