from .approval import ApprovalGate
from .ledger import compute_balance, validate_transfer_request
from .pricing import (
    apply_order_pricing,
    calculate_order_pricing,
    update_pricing_inputs,
    validate_pricing_inputs,
)
from .sorting import (
    approve_sorting,
    can_user_approve_sorting,
    record_sorting_results,
    sorting_summary,
    transfer_to_destination,
)
from .stages import (
    advance,
    cancel,
    cancel_handover,
    confirm_handover,
    create_order,
    request_handover,
    restore_order,
    skip_stage,
    soft_delete_order,
)
from .transfers import approve_transfer, reject_transfer, request_transfer
