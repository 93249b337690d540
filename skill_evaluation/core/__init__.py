"""
Core skill evaluation modules.
"""

from .skill_evaluation import (
    SkillEvaluationPipeline,
    SkillAccumulator,
    SKILL_BANDS,
    BEST_METHOD_NODATA,
    quantile_weights,
    weighted_absolute_error,
    weighted_mae,
    select_best_method,
    summarize_skill
)

__all__ = [
    'SkillEvaluationPipeline',
    'SkillAccumulator',
    'SKILL_BANDS',
    'BEST_METHOD_NODATA',
    'quantile_weights',
    'weighted_absolute_error',
    'weighted_mae',
    'select_best_method',
    'summarize_skill'
]
