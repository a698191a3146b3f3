"""
Trigger package: pure firing rules and the liquidation predicate.
"""

from keeper.triggers.evaluator import (
    Action,
    Decision,
    TriggerEvaluator,
    evaluate_bet,
    evaluate_limit_order,
    evaluate_liquidation,
    evaluate_tpsl,
    evaluate_windowed_order,
    limit_open_hit,
    stop_loss_hit,
    take_profit_hit,
)
from keeper.triggers.risk import MarginRiskEvaluator, RiskEvaluator, calculate_pnl

__all__ = [
    "Action",
    "Decision",
    "TriggerEvaluator",
    "evaluate_bet",
    "evaluate_limit_order",
    "evaluate_liquidation",
    "evaluate_tpsl",
    "evaluate_windowed_order",
    "limit_open_hit",
    "stop_loss_hit",
    "take_profit_hit",
    "MarginRiskEvaluator",
    "RiskEvaluator",
    "calculate_pnl",
]
