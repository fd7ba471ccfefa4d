"""Unit tests for loanbook_import.rows."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from loanbook_import.ingest import RawRow
from loanbook_import.mapping import map_columns
from loanbook_import.rows import MatchCandidate, NormalizedRow, normalize_row
from loanbook_import.schema import load_builtin_schema

LOAN_HEADERS = [
    "customerIdentifier", "amount", "interestRate", "durationMonths",
    "loanType", "disbursementDate",
]
CUSTOMER_HEADERS = ["Full Name", "Phone", "Email", "NRC", "Address"]


@pytest.fixture(scope="module")
def loan_schema():
    return load_builtin_schema("loan")


@pytest.fixture(scope="module")
def customer_schema():
    return load_builtin_schema("customer")


@pytest.fixture(scope="module")
def loan_mapping(loan_schema):
    return map_columns(LOAN_HEADERS, loan_schema)


@pytest.fixture(scope="module")
def customer_mapping(customer_schema):
    return map_columns(CUSTOMER_HEADERS, customer_schema)


def _loan(index: int = 1, **overrides: str) -> RawRow:
    values = {
        "customerIdentifier": "cust-1",
        "amount": "5000",
        "interestRate": "12",
        "durationMonths": "6",
        "loanType": "",
        "disbursementDate": "",
    }
    values.update(overrides)
    return RawRow(index=index, values=values)


def _customer(index: int = 1, **overrides: str) -> RawRow:
    values = {
        "Full Name": "Jane Doe",
        "Phone": "0970000000",
        "Email": "",
        "NRC": "123456/78/9",
        "Address": "Plot 1, Lusaka",
    }
    values.update(overrides)
    return RawRow(index=index, values=values)


def _messages(row: NormalizedRow) -> list[str]:
    return [e.message for e in row.errors]


# ---------------------------------------------------------------------------
# Clean rows
# ---------------------------------------------------------------------------

class TestCleanLoanRow:
    def test_typed_fields(self, loan_schema, loan_mapping):
        row = normalize_row(
            _loan(amount="K 12,500.00", interestRate="15%", durationMonths="12",
                  disbursementDate="15/03/2024"),
            loan_mapping, loan_schema,
        )
        assert row.is_clean
        assert row.fields["amount"] == Decimal("12500.00")
        assert row.fields["interestRate"] == Decimal("15")
        assert row.fields["durationMonths"] == 12
        assert row.fields["disbursementDate"] == date(2024, 3, 15)

    def test_defaults_applied(self, loan_schema, loan_mapping):
        row = normalize_row(_loan(), loan_mapping, loan_schema)
        assert row.fields["loanType"] == "Personal Loan"
        assert row.fields["collateralIncluded"] is False

    def test_given_value_beats_default(self, loan_schema, loan_mapping):
        row = normalize_row(_loan(loanType="Business  Loan"), loan_mapping, loan_schema)
        assert row.fields["loanType"] == "Business Loan"

    def test_unmapped_optional_is_none(self, loan_schema, loan_mapping):
        row = normalize_row(_loan(), loan_mapping, loan_schema)
        assert row.fields["customerNrc"] is None

    def test_boundary_values_accepted(self, loan_schema, loan_mapping):
        row = normalize_row(
            _loan(interestRate="0", durationMonths="1", amount="0.01"),
            loan_mapping, loan_schema,
        )
        assert row.is_clean

    def test_index_preserved(self, loan_schema, loan_mapping):
        assert normalize_row(_loan(index=42), loan_mapping, loan_schema).index == 42

    def test_custom_date_formats(self, loan_schema, loan_mapping):
        row = normalize_row(
            _loan(disbursementDate="03/15/2024"), loan_mapping, loan_schema,
            date_formats=("%m/%d/%Y",),
        )
        assert row.fields["disbursementDate"] == date(2024, 3, 15)


class TestCleanCustomerRow:
    def test_normalized_fields(self, customer_schema, customer_mapping):
        row = normalize_row(
            _customer(**{"Full Name": "  Jane   Doe ", "Email": "Jane@Example.com"}),
            customer_mapping, customer_schema,
        )
        assert row.is_clean
        assert row.fields["fullName"] == "Jane Doe"
        assert row.fields["phone"] == "+260970000000"
        assert row.fields["email"] == "jane@example.com"
        assert row.fields["nrcNumber"] == "123456/78/9"

    def test_blank_optional_email(self, customer_schema, customer_mapping):
        row = normalize_row(_customer(), customer_mapping, customer_schema)
        assert row.is_clean
        assert row.fields["email"] is None


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TestRowErrors:
    def test_missing_required(self, loan_schema, loan_mapping):
        row = normalize_row(_loan(customerIdentifier="   "), loan_mapping, loan_schema)
        assert _messages(row) == ["customerIdentifier is required"]
        assert row.errors[0].field == "customerIdentifier"

    def test_bad_value_quotes_raw(self, loan_schema, loan_mapping):
        row = normalize_row(_loan(amount="lots"), loan_mapping, loan_schema)
        assert _messages(row) == ["amount has invalid value 'lots'"]

    def test_fractional_months(self, loan_schema, loan_mapping):
        row = normalize_row(_loan(durationMonths="12.5"), loan_mapping, loan_schema)
        assert _messages(row) == ["durationMonths has invalid value '12.5'"]

    def test_bad_date(self, loan_schema, loan_mapping):
        row = normalize_row(_loan(disbursementDate="someday"), loan_mapping, loan_schema)
        assert _messages(row) == ["disbursementDate has invalid value 'someday'"]

    def test_interest_rate_range(self, loan_schema, loan_mapping):
        row = normalize_row(_loan(interestRate="150"), loan_mapping, loan_schema)
        assert _messages(row) == ["interestRate must be between 0 and 100"]

    def test_duration_minimum(self, loan_schema, loan_mapping):
        row = normalize_row(_loan(durationMonths="0"), loan_mapping, loan_schema)
        assert _messages(row) == ["durationMonths must be at least 1"]

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_amount_positive(self, loan_schema, loan_mapping, amount):
        row = normalize_row(_loan(amount=amount), loan_mapping, loan_schema)
        assert _messages(row) == ["amount must be greater than 0"]

    def test_all_errors_collected_in_field_order(self, loan_schema, loan_mapping):
        row = normalize_row(
            _loan(index=3, customerIdentifier="", amount="abc", interestRate="150",
                  durationMonths="0"),
            loan_mapping, loan_schema,
        )
        assert [str(e) for e in row.errors] == [
            "Row 3: customerIdentifier is required",
            "Row 3: amount has invalid value 'abc'",
            "Row 3: interestRate must be between 0 and 100",
            "Row 3: durationMonths must be at least 1",
        ]

    def test_invalid_field_not_in_output(self, loan_schema, loan_mapping):
        row = normalize_row(_loan(amount="abc"), loan_mapping, loan_schema)
        assert "amount" not in row.fields

    def test_unmapped_required_field(self, loan_schema):
        mapping = map_columns(["customerIdentifier", "interestRate", "durationMonths"], loan_schema)
        raw = RawRow(1, {"customerIdentifier": "c", "interestRate": "5", "durationMonths": "3"})
        row = normalize_row(raw, mapping, loan_schema)
        assert _messages(row) == ["amount is required"]

    def test_bad_phone(self, customer_schema, customer_mapping):
        row = normalize_row(_customer(Phone="12"), customer_mapping, customer_schema)
        assert _messages(row) == ["phone has invalid value '12'"]

    def test_bad_email(self, customer_schema, customer_mapping):
        row = normalize_row(_customer(Email="nope"), customer_mapping, customer_schema)
        assert _messages(row) == ["email has invalid value 'nope'"]


class TestRequiredWhenMapped:
    def test_mapped_and_blank_fails(self, customer_schema, customer_mapping):
        row = normalize_row(_customer(Address=" "), customer_mapping, customer_schema)
        assert _messages(row) == ["address is required"]

    def test_unmapped_passes(self, customer_schema):
        mapping = map_columns(["Full Name", "Phone", "NRC"], customer_schema)
        raw = RawRow(1, {"Full Name": "Jane", "Phone": "0970000000", "NRC": "1/2/3"})
        row = normalize_row(raw, mapping, customer_schema)
        assert row.is_clean
        assert row.fields["address"] is None


# ---------------------------------------------------------------------------
# NormalizedRow
# ---------------------------------------------------------------------------

class TestNormalizedRow:
    def test_frozen(self, loan_schema, loan_mapping):
        row = normalize_row(_loan(), loan_mapping, loan_schema)
        with pytest.raises(AttributeError):
            row.index = 9  # type: ignore[misc]

    def test_with_match_returns_new_row(self, loan_schema, loan_mapping):
        row = normalize_row(_loan(), loan_mapping, loan_schema)
        matched = row.with_match(MatchCandidate("c-1", 1.0, "id", "cust-1"))
        assert row.match is None
        assert matched.match.entity_id == "c-1"

    def test_commit_fields_carry_customer_id(self, loan_schema, loan_mapping):
        row = normalize_row(_loan(), loan_mapping, loan_schema)
        fields = row.with_match(MatchCandidate("c-1", 1.0, "id", "cust-1")).commit_fields()
        assert fields["customerId"] == "c-1"
        assert "customerId" not in row.fields
