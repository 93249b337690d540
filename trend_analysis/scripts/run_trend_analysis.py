#!/usr/bin/env python3
"""
Trend analysis script.

Command-line interface for writing the (slope, slope_significance,
rank_correlation, rank_significance) trend raster of each method's
per-year outputs.

Usage:
    python run_trend_analysis.py [--methods rpi rue] [--config CONFIG]
"""

import argparse
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from trend_analysis.core.trend_estimation import TrendAnalysisPipeline


def parse_arguments():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Per-pixel trend rasters for method outputs",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    
    parser.add_argument('--config', type=str,
                        help='Path to configuration file (default: component config.yaml)')
    parser.add_argument('--methods', type=str, nargs='+', help='Methods to process (default: config)')
    parser.add_argument('--output-dir', type=str, help='Directory for trend rasters')
    
    return parser.parse_args()


def main():
    """Main entry point for trend analysis script."""
    args = parse_arguments()
    
    pipeline = TrendAnalysisPipeline(args.config)
    return pipeline.run_full_pipeline(methods=args.methods, output_dir=args.output_dir)


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
