#!/usr/bin/env python3
"""
Streaming raster prediction script.

Applies the trained model to every year of the covariate archive and writes
one (observed, potential, mean_estimate, index) raster per year. Years
already written are skipped unless --overwrite is given.

Usage:
    python run_prediction.py [--config CONFIG] [--years 2001 2002 ...]
"""

import argparse
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from potential_productivity.core.model_prediction import StreamingRasterPredictionPipeline


def parse_arguments():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Predict potential productivity rasters year by year",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    
    parser.add_argument('--config', type=str,
                        help='Path to configuration file (default: component config.yaml)')
    parser.add_argument('--model', type=str, help='Trained model artifact')
    parser.add_argument('--covariate-dir', type=str, help='Directory of per-year covariate rasters')
    parser.add_argument('--output-dir', type=str, help='Directory for per-year output rasters')
    parser.add_argument('--study-area', type=str, help='Study area boundary (vector file)')
    parser.add_argument('--years', type=int, nargs='+', help='Years to process (default: all)')
    parser.add_argument('--overwrite', action='store_true', help='Recompute existing outputs')
    
    return parser.parse_args()


def main():
    """Main entry point for raster prediction script."""
    args = parse_arguments()
    
    pipeline = StreamingRasterPredictionPipeline(args.config)
    if args.overwrite:
        pipeline.pred_config['overwrite'] = True
    
    return pipeline.run_full_pipeline(
        model_path=args.model,
        covariate_dir=args.covariate_dir,
        output_dir=args.output_dir,
        study_area_path=args.study_area,
        years=args.years
    )


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
