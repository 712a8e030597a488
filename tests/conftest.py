"""
Pytest Configuration and Shared Fixtures

Cohort data for the in-process servers used throughout the test suite.
"""

import numpy as np
import pandas as pd
import pytest

from dshelper.client.connections import Connections
from dshelper.local.server import LocalDataSource


def _factor(values, categories=None):
    return pd.Categorical(values, categories=categories)


@pytest.fixture
def cohort_a_frame():
    """Ten subjects; sex complete, bmi missing once."""
    return pd.DataFrame({
        "child_id": list(range(1, 11)),
        "sex": _factor(["female"] * 4 + ["male"] * 6),
        "edu": _factor(["low"] * 5 + ["high"] * 5),
        "bmi": [20.0, 21.0, 22.0, 23.0, 24.0, 25.0, 26.0, 27.0, 28.0, np.nan],
        "age": [1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0, 9.0, 10.0],
    })


@pytest.fixture
def cohort_b_frame():
    """Eight subjects; sex missing once, no ``edu`` column."""
    return pd.DataFrame({
        "child_id": list(range(101, 109)),
        "sex": _factor(["female"] * 3 + ["male"] * 4 + [None], categories=["female", "male"]),
        "bmi": [30.0, 31.0, 32.0, 33.0, 34.0, 35.0, 36.0, 37.0],
        "age": [2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0, 9.0],
    })


@pytest.fixture
def conns(cohort_a_frame, cohort_b_frame):
    """Two local cohorts, each holding its frame as ``D``."""
    return Connections([
        LocalDataSource("a", {"D": cohort_a_frame}),
        LocalDataSource("b", {"D": cohort_b_frame}),
    ])


def repeated_measures(ids, ages, base):
    """Long data: one row per subject and age, ``bmi = base + id + age / 10``."""
    rows = [
        {"child_id": i, "age": age, "bmi": base + i + age / 10, "sex": "female" if i % 2 else "male"}
        for i in ids
        for age in ages
    ]
    frame = pd.DataFrame(rows)
    frame["sex"] = frame["sex"].astype("category")
    return frame


@pytest.fixture
def long_a():
    """Six subjects measured at ages 1, 3, 4 and 8."""
    return repeated_measures(range(1, 7), [1.0, 3.0, 4.0, 8.0], base=15.0)


@pytest.fixture
def long_b():
    """Five subjects measured at ages 1.5, 4.5 and 8."""
    return repeated_measures(range(101, 106), [1.5, 4.5, 8.0], base=-80.0)


@pytest.fixture
def long_conns(long_a, long_b):
    return Connections([
        LocalDataSource("a", {"D": long_a}),
        LocalDataSource("b", {"D": long_b}),
    ])


@pytest.fixture(autouse=True)
def _no_default_connections():
    """Keep registered default connections from leaking between tests."""
    Connections.clear_default()
    yield
    Connections.clear_default()


def pytest_configure(config):
    """Register the test-layer markers (select with -m unit or -m integration)."""
    config.addinivalue_line(
        "markers", "unit: single module against in-process servers"
    )
    config.addinivalue_line(
        "markers", "integration: full helper runs across several cohorts"
    )


@pytest.fixture
def make_repeated():
    """Builder for extra repeated-measures cohorts."""
    return repeated_measures
