"""
Skill Evaluation Component

Per-pixel comparison of potential productivity methods through explained
variance (R²) and quantile-weighted mean absolute error, with a
categorical raster of the best method per pixel.

Components:
    core/: Core processing modules
    scripts/: Executable entry points
    config.yaml: Component configuration
"""

from .core.skill_evaluation import SkillEvaluationPipeline, SkillAccumulator, quantile_weights, select_best_method

__version__ = "1.0.0"
__component__ = "skill_evaluation"

__all__ = [
    "SkillEvaluationPipeline",
    "SkillAccumulator",
    "quantile_weights",
    "select_best_method"
]
