"""
Experimentation service module for A/B testing functionality.

This module provides:
- Experiment registry with lifecycle transitions and live counters
- Deterministic, sticky variant assignment
- Statistical analysis for A/B tests (z-test, confidence intervals, power)
"""

from app.services.experiments.assignment import AssignmentService
from app.services.experiments.registry import ExperimentRegistry
from app.services.experiments.stats import (
    calculate_confidence_interval,
    calculate_conversion_rate,
    calculate_lift,
    calculate_sample_size_requirement,
    evaluate,
    evaluate_experiment,
    run_proportion_z_test,
)

__all__ = [
    "calculate_conversion_rate",
    "calculate_lift",
    "calculate_confidence_interval",
    "run_proportion_z_test",
    "calculate_sample_size_requirement",
    "evaluate",
    "evaluate_experiment",
    "AssignmentService",
    "ExperimentRegistry",
]
