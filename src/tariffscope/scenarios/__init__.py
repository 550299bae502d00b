"""Landed-cost scenarios: cost model, scenario builder, savings engine,
comparison and optimization recommendations."""

from tariffscope.scenarios.comparator import compare_multiple_scenarios
from tariffscope.scenarios.cost_model import compute_landed_cost
from tariffscope.scenarios.recommendations import generate_optimization_recommendations
from tariffscope.scenarios.savings import SavingsAnalysisEngine

__all__ = [
    "SavingsAnalysisEngine",
    "compare_multiple_scenarios",
    "compute_landed_cost",
    "generate_optimization_recommendations",
]
