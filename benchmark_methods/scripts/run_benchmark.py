#!/usr/bin/env python3
"""
Benchmark methods script.

Command-line interface for computing the RUE, RESTREND and LGS benchmark
rasters over the covariate archive.

Usage:
    python run_benchmark.py [--methods rue restrend lgs] [--config CONFIG]
"""

import argparse
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from benchmark_methods.core import BENCHMARK_PIPELINES


def parse_arguments():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Compute benchmark potential productivity rasters",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    
    parser.add_argument('--config', type=str,
                        help='Path to configuration file (default: component config.yaml)')
    parser.add_argument('--methods', type=str, nargs='+', default=list(BENCHMARK_PIPELINES),
                        choices=list(BENCHMARK_PIPELINES), help='Methods to run')
    parser.add_argument('--covariate-dir', type=str, help='Directory of per-year covariate rasters')
    parser.add_argument('--output-root', type=str,
                        help='Root directory; each method writes to <root>/<method>')
    parser.add_argument('--study-area', type=str, help='Study area boundary (vector file)')
    parser.add_argument('--years', type=int, nargs='+', help='Years to process (default: all)')
    
    return parser.parse_args()


def main():
    """Main entry point for the benchmark script."""
    args = parse_arguments()
    
    success = True
    for method in args.methods:
        pipeline = BENCHMARK_PIPELINES[method](args.config)
        output_dir = Path(args.output_root) / pipeline.method_name if args.output_root else None
        success &= pipeline.run_full_pipeline(
            covariate_dir=args.covariate_dir,
            output_dir=output_dir,
            study_area_path=args.study_area,
            years=args.years
        )
    return success


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
