"""
Decimal precision helpers
"""
from decimal import Decimal

import pytest

from core.billing_errors import InvalidAmountError, PercentOutOfRangeError
from core.financial_precision import (
    FinancialPrecisionError, amounts_match, calculate_percentage, percent_of,
    round_financial, safe_add, safe_divide, to_decimal, to_float,
    validate_non_negative, validate_percent
)


class TestConversion:

    def test_float_goes_through_str(self):
        assert to_decimal(0.1) + to_decimal(0.2) == Decimal("0.3")

    def test_bool_is_rejected(self):
        with pytest.raises(FinancialPrecisionError):
            to_decimal(True)

    def test_garbage_string_is_rejected(self):
        with pytest.raises(FinancialPrecisionError):
            to_decimal("ten dollars")

    def test_rounding_is_half_up(self):
        assert round_financial("2.345") == Decimal("2.35")
        assert to_float("1.005") == 1.01


class TestValidation:

    def test_negative_amount_names_the_field(self):
        with pytest.raises(InvalidAmountError) as exc:
            validate_non_negative(-1, "material_stored")
        assert exc.value.field == "material_stored"
        assert exc.value.to_dict()["kind"] == "INVALID_AMOUNT"

    @pytest.mark.parametrize("value", [-0.01, 100.01, 150])
    def test_percent_outside_range(self, value):
        with pytest.raises(PercentOutOfRangeError):
            validate_percent(value, "submitted_percent")

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), Decimal("NaN"), "-Infinity"])
    def test_non_finite_percent_is_out_of_range(self, value):
        with pytest.raises(PercentOutOfRangeError) as exc:
            validate_percent(value, "submitted_percent")
        assert isinstance(exc.value.to_dict()["value"], str)

    @pytest.mark.parametrize("value", [float("nan"), float("inf")])
    def test_non_finite_amount_is_rejected(self, value):
        with pytest.raises(InvalidAmountError) as exc:
            validate_non_negative(value, "material_stored")
        assert exc.value.to_dict()["value"] in ("nan", "inf")

    @pytest.mark.parametrize("value", [0, 42.5, 100])
    def test_percent_bounds_are_inclusive(self, value):
        assert validate_percent(value, "submitted_percent") == to_decimal(value)


class TestArithmetic:

    def test_divide_by_zero_is_zero(self):
        assert safe_divide(10, 0) == Decimal("0")
        assert percent_of(10, 0) == Decimal("0")

    def test_percentage_helpers(self):
        assert calculate_percentage(1000, 10) == Decimal("100")
        assert percent_of(2500, 10000) == Decimal("25")
        assert safe_add(1, "2.5", Decimal("0.5")) == Decimal("4")

    def test_amounts_match_within_a_cent(self):
        assert amounts_match(10000, "10000.01")
        assert not amounts_match(10000, 10001)
