"""Tests for MM/YYYY period tokens."""

import pytest
from datetime import date

from settlement.services.errors import ValidationError
from settlement.services.periods import current_period, parse_period, period_bounds


class TestPeriods:

    def test_current_period_formats_month_and_year(self):
        assert current_period(date(2026, 3, 5)) == "03/2026"

    def test_parse_valid_period(self):
        assert parse_period("10/2026") == (10, 2026)

    @pytest.mark.parametrize("token", ["3/2026", "2026-03", "13/2026", "00/2026", "", None])
    def test_parse_rejects_malformed(self, token):
        with pytest.raises(ValidationError):
            parse_period(token)

    def test_bounds_within_year(self):
        assert period_bounds("02/2026") == (date(2026, 2, 1), date(2026, 3, 1))

    def test_bounds_december_rolls_into_next_year(self):
        assert period_bounds("12/2025") == (date(2025, 12, 1), date(2026, 1, 1))

    @pytest.mark.parametrize("token", ["01/0000", "12/9999", "06/1899"])
    def test_out_of_range_year_rejected(self, token):
        with pytest.raises(ValidationError, match="Period year"):
            period_bounds(token)

    def test_last_supported_december(self):
        assert period_bounds("12/9998") == (date(9998, 12, 1), date(9999, 1, 1))
