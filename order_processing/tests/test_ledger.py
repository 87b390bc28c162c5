from decimal import Decimal

import pytest

from order_processing.errors import InsufficientWeight, NegativeBalance, WorkflowValidationError
from order_processing.services.ledger import (
    available_weight,
    compute_balance,
    validate_transfer_request,
)


def test_balance_is_received_minus_transferred():
    assert compute_balance("500", "120.5") == Decimal("379.500")
    assert compute_balance(Decimal("500"), Decimal("500")) == Decimal("0.000")


def test_balance_never_goes_negative():
    with pytest.raises(NegativeBalance) as exc:
        compute_balance("100", "100.001")
    assert exc.value.kind == "negative_balance"


def test_request_within_available_weight_passes():
    assert validate_transfer_request("500", "200", "300") == Decimal("300.000")


def test_request_above_available_weight_fails():
    with pytest.raises(InsufficientWeight) as exc:
        validate_transfer_request("500", "0", "600")
    assert exc.value.details["available"] == "500.000"


@pytest.mark.parametrize("requested", ["0", "-5"])
def test_request_must_be_positive(requested):
    with pytest.raises(WorkflowValidationError):
        validate_transfer_request("500", "0", requested)


def test_non_numeric_weight_is_a_validation_error():
    with pytest.raises(WorkflowValidationError):
        validate_transfer_request("500", "0", "lots")


def test_available_weight_floors_at_zero():
    assert available_weight("10", "25") == Decimal("0.000")


@pytest.mark.parametrize("requested", ["NaN", "Infinity", "-Infinity", "sNaN"])
def test_non_finite_weight_is_a_validation_error(requested):
    with pytest.raises(WorkflowValidationError):
        validate_transfer_request("500", "0", requested)


def test_non_finite_received_weight_is_a_validation_error():
    with pytest.raises(WorkflowValidationError):
        compute_balance("NaN", "0")
