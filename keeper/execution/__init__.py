"""
Execution package: price attestation, settlement plans and the sequencer.
"""

from keeper.execution.calls import (
    FeeSplit,
    GasBudgets,
    PlanBuilder,
    SettlementPlan,
    compute_fees,
    compute_refund,
    opened_position_id,
)
from keeper.execution.price_signer import PriceSigner, SignedPrice
from keeper.execution.settlement import (
    Outcome,
    SettlementResult,
    SettlementSequencer,
    signature_rejected,
)

__all__ = [
    "FeeSplit",
    "GasBudgets",
    "PlanBuilder",
    "SettlementPlan",
    "compute_fees",
    "compute_refund",
    "opened_position_id",
    "PriceSigner",
    "SignedPrice",
    "Outcome",
    "SettlementResult",
    "SettlementSequencer",
    "signature_rejected",
]
