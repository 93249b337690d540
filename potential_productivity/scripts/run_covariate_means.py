#!/usr/bin/env python3
"""
Covariate means script.

Writes the per-pixel multi-year mean of the selected covariate bands, used
to derive anomaly features at prediction time.

Usage:
    python run_covariate_means.py --bands precipitation [--output FILE]
"""

import argparse
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from potential_productivity.core.covariate_means import compute_covariate_means
from potential_productivity.core.raster_io import CovariateArchive
from shared_utils import setup_logging, load_config
from shared_utils.central_data_paths_constants import COVARIATES_DIR, COVARIATE_MEANS_FILE


def parse_arguments():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Compute multi-year covariate means",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    
    parser.add_argument('--config', type=str,
                        help='Path to configuration file (default: component config.yaml)')
    parser.add_argument('--bands', type=str, nargs='+',
                        help='Bands to average (default: samples.anomaly_variables)')
    parser.add_argument('--covariate-dir', type=str, default=str(COVARIATES_DIR))
    parser.add_argument('--output', type=str, default=str(COVARIATE_MEANS_FILE))
    
    return parser.parse_args()


def main():
    """Main entry point for covariate means script."""
    args = parse_arguments()
    config = load_config(args.config, component_name="potential_productivity")
    logger = setup_logging(level=config['logging']['level'], component_name='covariate_means')
    
    bands = args.bands or config['samples'].get('anomaly_variables', [])
    if not bands:
        logger.error("No bands to average")
        return False
    
    try:
        archive = CovariateArchive(args.covariate_dir, config['prediction'].get('covariate_pattern', 'covariates_{year}.tif'))
        output = compute_covariate_means(archive, bands, args.output,
                                         geotiff_options=config.get('output', {}).get('geotiff'))
        logger.info(f"Covariate means written to {output}")
        return True
    except Exception as e:
        logger.error(f"Covariate means failed: {e}")
        return False


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
