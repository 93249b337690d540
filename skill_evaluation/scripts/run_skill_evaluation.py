#!/usr/bin/env python3
"""
Skill evaluation script.

Command-line interface for computing per-pixel R² and quantile-weighted
MAE of every method and the best-method raster.

Usage:
    python run_skill_evaluation.py [--config CONFIG] [--output-dir DIR]
"""

import argparse
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from skill_evaluation.core.skill_evaluation import SkillEvaluationPipeline


def parse_arguments():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Compare potential productivity methods per pixel",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    
    parser.add_argument('--config', type=str,
                        help='Path to configuration file (default: component config.yaml)')
    parser.add_argument('--covariate-dir', type=str, help='Directory of per-year covariate rasters')
    parser.add_argument('--output-dir', type=str, help='Directory for skill outputs')
    
    return parser.parse_args()


def main():
    """Main entry point for skill evaluation script."""
    args = parse_arguments()
    
    pipeline = SkillEvaluationPipeline(args.config)
    return pipeline.run_full_pipeline(covariate_dir=args.covariate_dir, output_dir=args.output_dir)


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
