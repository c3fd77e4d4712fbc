"""Tests for caller-id normalisation."""

import pytest
from complaint_intake.phone_utils import UNKNOWN_CALLER, format_for_display, normalise_phone


class TestNormalisePhone:
    def test_e164_passthrough(self):
        assert normalise_phone("+12015550123") == "+12015550123"

    def test_national_format_uses_region(self):
        assert normalise_phone("(201) 555-0123", region="US") == "+12015550123"

    def test_other_region(self):
        assert normalise_phone("321 1234567", region="CO") == "+573211234567"

    @pytest.mark.parametrize("raw", [None, "", "  ", "anonymous", "Restricted", "unknown"])
    def test_withheld_caller(self, raw):
        assert normalise_phone(raw) == UNKNOWN_CALLER

    def test_invalid_number_kept_as_is(self):
        assert normalise_phone(" +15550000 ") == "+15550000"

    def test_garbage_kept_as_is(self):
        assert normalise_phone("client:agent") == "client:agent"


class TestFormatForDisplay:
    def test_valid_number(self):
        assert format_for_display("+12015550123") == "+1 201-555-0123"

    def test_unknown_passthrough(self):
        assert format_for_display(UNKNOWN_CALLER) == UNKNOWN_CALLER
