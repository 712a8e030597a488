"""Tests for dshelper.client.expression."""
import math

import pytest

from dshelper.client.expression import (
    OPERATOR_SYMBOLS,
    build_call,
    format_number,
    literal,
    operator_code,
    quote,
    ref,
)


pytestmark = pytest.mark.unit


class TestOperatorCodes:
    def test_codes(self):
        assert [operator_code(op) for op in ["==", "!=", "<", "<=", ">", ">="]] == [1, 2, 3, 4, 5, 6]

    def test_symbols_invert_codes(self):
        assert OPERATOR_SYMBOLS[5] == ">"

    def test_unknown_operator_raises(self):
        with pytest.raises(ValueError, match="Unsupported operator"):
            operator_code("=<")


class TestFormatNumber:
    def test_integral_float_drops_decimal(self):
        assert format_number(10.0) == "10"

    def test_fraction_kept(self):
        assert format_number(1.5) == "1.5"

    def test_int(self):
        assert format_number(-99999) == "-99999"

    def test_nan(self):
        assert format_number(math.nan) == "NA"

    def test_bool_rejected(self):
        with pytest.raises(TypeError):
            format_number(True)


class TestLiteral:
    def test_scalars(self):
        assert literal(None) == "NULL"
        assert literal(True) == "TRUE"
        assert literal(False) == "FALSE"
        assert literal(3) == "3"
        assert literal("D$bmi") == '"D$bmi"'

    def test_sequence(self):
        assert literal(["D", "age"]) == 'c("D", "age")'
        assert literal((0, 2)) == "c(0, 2)"

    def test_quote_escapes(self):
        assert quote('a"b') == '"a\\"b"'
        assert quote("a\\b") == '"a\\\\b"'

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            literal({"a": 1})


class TestBuildCall:
    def test_no_args(self):
        assert build_call("lsDS") == "lsDS()"

    def test_mixed_args(self):
        call = build_call("BooleDS", "D$age", 2.0, 5, "NA", True)
        assert call == 'BooleDS("D$age", 2, 5, "NA", TRUE)'

    def test_ref(self):
        assert ref("D", "bmi") == "D$bmi"
