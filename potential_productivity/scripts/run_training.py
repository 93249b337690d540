#!/usr/bin/env python3
"""
Quantile model training script.

Command-line interface for training the potential productivity model from
the sample table: spatiotemporal CV, forward feature selection,
hyperparameter search and final fit.

Usage:
    python run_training.py [--config CONFIG] [--samples FILE] [--model-output FILE]
"""

import argparse
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from potential_productivity.core.model_training import QuantileModelTrainingPipeline


def parse_arguments():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Train the quantile potential productivity model",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    
    parser.add_argument(
        '--config',
        type=str,
        help='Path to configuration file (default: component config.yaml)'
    )
    parser.add_argument(
        '--samples',
        type=str,
        help='Sample table (CSV or vector file)'
    )
    parser.add_argument(
        '--model-output',
        type=str,
        help='Destination of the trained model artifact'
    )
    parser.add_argument(
        '--log-dir',
        type=str,
        help='Directory for feature selection and tuning score logs'
    )
    
    return parser.parse_args()


def main():
    """Main entry point for model training script."""
    args = parse_arguments()
    
    pipeline = QuantileModelTrainingPipeline(args.config)
    return pipeline.run_full_pipeline(
        sample_path=args.samples,
        model_path=args.model_output,
        log_dir=args.log_dir
    )


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
