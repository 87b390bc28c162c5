"""Weight bookkeeping for a single processing record.

Pure functions: nothing here reads or writes the database.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from order_processing.errors import InsufficientWeight, NegativeBalance, WorkflowValidationError

WEIGHT_QUANTUM = Decimal("0.001")


def to_weight(x):
    if x is None or x == "":
        x = 0
    try:
        value = Decimal(str(x))
        if not value.is_finite():
            raise InvalidOperation(x)
        return value.quantize(WEIGHT_QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise WorkflowValidationError(f"'{x}' is not a valid weight.")


def compute_balance(received, transferred):
    received = to_weight(received)
    transferred = to_weight(transferred)
    if transferred > received:
        raise NegativeBalance(
            f"Transferred weight {transferred} exceeds received weight {received}.",
            received=str(received),
            transferred=str(transferred),
        )
    return received - transferred


def available_weight(received, already_transferred):
    return max(to_weight(received) - to_weight(already_transferred), Decimal("0.000"))


def validate_transfer_request(received, already_transferred, requested):
    requested = to_weight(requested)
    if requested <= 0:
        raise WorkflowValidationError("Transfer weight must be greater than zero.")
    available = to_weight(received) - to_weight(already_transferred)
    if requested > available:
        raise InsufficientWeight(
            f"Requested {requested} but only {max(available, Decimal('0.000'))} is available.",
            requested=str(requested),
            available=str(max(available, Decimal("0.000"))),
        )
    return requested
