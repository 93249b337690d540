#!/usr/bin/env python3
"""
Recipe: Productivity Gap Analysis

Reproduces the full analysis:
1. Quantile model training on the sample points
2. Streaming raster prediction of potential productivity (RPI)
3. Benchmark methods (RUE, RESTREND, LGS)
4. Per-pixel trend rasters for every method
5. Skill comparison and best-method raster

Each stage uses its component's default config.yaml and the central data
paths. Stages whose outputs already exist resume rather than recompute.

Usage:
    python productivity_gap_recipe.py [--stages training prediction ...]
"""

import argparse
import sys
import time
from pathlib import Path
from typing import Callable, Dict, List

# Add repo root to path for absolute imports
sys.path.insert(0, str(Path(__file__).parent))

from shared_utils.central_data_paths_constants import COVARIATES_DIR, MODEL_FILE, SAMPLE_POINTS_FILE
from shared_utils.logging_utils import setup_logging

from potential_productivity.core.model_training import QuantileModelTrainingPipeline
from potential_productivity.core.model_prediction import StreamingRasterPredictionPipeline
from benchmark_methods.core import BENCHMARK_PIPELINES
from trend_analysis.core.trend_estimation import TrendAnalysisPipeline
from skill_evaluation.core.skill_evaluation import SkillEvaluationPipeline

STAGES = ('training', 'prediction', 'benchmarks', 'trends', 'skill')


class ProductivityGapRecipe:
    """
    Recipe for the productivity gap analysis.

    Runs the component pipelines in dependency order and records the
    outcome and duration of each stage.
    """

    def __init__(self, log_level: str = "INFO"):
        self.logger = setup_logging(
            level=log_level,
            component_name='productivity_gap_recipe'
        )
        self.stage_results: Dict[str, Dict] = {}
        self.logger.info("Initialized Productivity Gap Recipe")

    def validate_prerequisites(self, stages: List[str]) -> bool:
        """
        Validate that the inputs of the first requested stages exist.

        Returns:
            bool: True if prerequisites are met
        """
        if 'training' in stages and not SAMPLE_POINTS_FILE.exists():
            self.logger.error(f"Sample points not found: {SAMPLE_POINTS_FILE}")
            return False

        if 'prediction' in stages and 'training' not in stages and not MODEL_FILE.exists():
            self.logger.error(f"Trained model not found: {MODEL_FILE}")
            return False

        if any(s in stages for s in ('prediction', 'benchmarks', 'skill')):
            if not COVARIATES_DIR.exists() or not any(COVARIATES_DIR.glob("*.tif")):
                self.logger.error(f"No covariate rasters found in: {COVARIATES_DIR}")
                return False

        self.logger.info("All prerequisites validated")
        return True

    def run_stage(self, stage_name: str, func: Callable[[], bool]) -> bool:
        self.logger.info(f"\n{'=' * 60}")
        self.logger.info(f"Starting {stage_name}")
        self.logger.info(f"{'=' * 60}")

        stage_start = time.time()
        try:
            success = bool(func())
            error = None
        except Exception as e:
            success = False
            error = str(e)
            self.logger.error(f"{stage_name} failed with error: {e}")

        stage_time = time.time() - stage_start
        self.stage_results[stage_name] = {
            'success': success,
            'duration_minutes': stage_time / 60,
            'error': error
        }

        if success:
            self.logger.info(f"{stage_name} completed successfully in {stage_time / 60:.2f} minutes")
        else:
            self.logger.error(f"{stage_name} failed after {stage_time / 60:.2f} minutes")
        return success

    def run_benchmarks(self) -> bool:
        success = True
        for pipeline_class in BENCHMARK_PIPELINES.values():
            success &= pipeline_class().run_full_pipeline()
        return success

    def run(self, stages: List[str]) -> bool:
        stage_functions = {
            'training': lambda: QuantileModelTrainingPipeline().run_full_pipeline(),
            'prediction': lambda: StreamingRasterPredictionPipeline().run_full_pipeline(),
            'benchmarks': self.run_benchmarks,
            'trends': lambda: TrendAnalysisPipeline().run_full_pipeline(),
            'skill': lambda: SkillEvaluationPipeline().run_full_pipeline()
        }

        overall_success = True
        for stage in STAGES:
            if stage not in stages:
                continue
            success = self.run_stage(stage.capitalize(), stage_functions[stage])
            overall_success = overall_success and success
            # Later stages consume the model artifact
            if stage == 'training' and not success:
                self.logger.error("Training failed, stopping the recipe")
                return False

        self.logger.info("\nStage summary:")
        for name, result in self.stage_results.items():
            status = "OK" if result['success'] else "FAILED"
            self.logger.info(f"  {name}: {status} ({result['duration_minutes']:.2f} min)")
        return overall_success


def parse_arguments() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Productivity gap analysis recipe",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument('--stages', type=str, nargs='+', choices=STAGES, default=list(STAGES),
                        help='Stages to run, in dependency order')
    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    return parser.parse_args()


def main():
    """Main entry point for the productivity gap recipe."""
    args = parse_arguments()
    start_time = time.time()

    recipe = ProductivityGapRecipe(args.log_level)
    if not recipe.validate_prerequisites(args.stages):
        recipe.logger.error("Prerequisites validation failed")
        return False

    success = recipe.run(args.stages)
    recipe.logger.info(f"Recipe finished in {(time.time() - start_time) / 60:.2f} minutes")
    return success


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
