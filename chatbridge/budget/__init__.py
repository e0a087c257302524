"""Token estimation and budget selection."""

from chatbridge.budget.estimator import TokenEstimator
from chatbridge.budget.optimizer import (
    DEFAULT_BUDGET,
    BudgetOptimizer,
    OptimizationResult,
    OptimizerConfig,
    TokenBudget,
    lookup_budget,
    token_limit,
)

__all__ = [
    "DEFAULT_BUDGET",
    "BudgetOptimizer",
    "OptimizationResult",
    "OptimizerConfig",
    "TokenBudget",
    "TokenEstimator",
    "lookup_budget",
    "token_limit",
]
