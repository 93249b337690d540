"""
Logging setup and progress reporting shared by the productivity gap components.

Every component logs under the ``productivity_gap`` hierarchy so a single
root configuration controls the console and optional file output of the
training, prediction, benchmark, trend and skill stages.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

import psutil

ROOT_LOGGER_NAME = 'productivity_gap'

LOG_FORMATS = {
    'standard': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    'detailed': '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s',
    'simple': '%(levelname)s: %(message)s'
}


def _handler(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    level: Union[str, int] = 'INFO',
    component_name: Optional[str] = None,
    log_file: Optional[Union[str, Path]] = None,
    format_style: str = 'standard'
) -> logging.Logger:
    """
    Configure the root logger and return the logger of one component.

    Existing root handlers are replaced, so calling this again from a second
    pipeline in the same process does not duplicate messages.

    Args:
        level: Logging level name or number
        component_name: Component suffix, e.g. 'raster_prediction'
        log_file: Optional file that receives a copy of every record
        format_style: One of 'standard', 'detailed', 'simple'

    Returns:
        logging.Logger: ``productivity_gap.<component_name>`` logger

    Examples:
        >>> logger = setup_logging('INFO', 'quantile_training')
        >>> logger = setup_logging('DEBUG', 'lgs', 'logs/lgs.log')
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())

    formatter = logging.Formatter(LOG_FORMATS.get(format_style, LOG_FORMATS['standard']),
                                  datefmt='%Y-%m-%d %H:%M:%S')

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(_handler(logging.StreamHandler(sys.stdout), level, formatter))

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        root_logger.addHandler(_handler(logging.FileHandler(log_path), level, formatter))

    return get_logger(component_name) if component_name else logging.getLogger(ROOT_LOGGER_NAME)


def get_logger(component_name: str) -> logging.Logger:
    """Logger of one component, without touching handlers."""
    return logging.getLogger(f'{ROOT_LOGGER_NAME}.{component_name}')


def format_duration(seconds: float) -> str:
    """Format seconds as HH:MM:SS."""
    seconds = int(seconds)
    return f"{seconds // 3600:02d}:{(seconds % 3600) // 60:02d}:{seconds % 60:02d}"


def log_year_progress(logger: logging.Logger, done: int, total: int, elapsed: float) -> None:
    """
    Log progress through a year loop with a remaining-time estimate.

    The estimate assumes the remaining years cost the mean of the finished
    ones. Resident memory of the current process is reported alongside so a
    leak across years shows up as steady growth.

    Args:
        logger: Component logger
        done: Number of years processed so far
        total: Number of years in the loop
        elapsed: Seconds since the loop started
    """
    remaining = (elapsed / done) * (total - done) if done else 0.0
    rss_gb = psutil.Process().memory_info().rss / 1024 ** 3
    logger.info(f"Progress: {done}/{total} years, elapsed {format_duration(elapsed)}, "
                f"estimated remaining {format_duration(remaining)}, RSS {rss_gb:.2f} GB")


def log_pipeline_start(logger: logging.Logger, pipeline_name: str, config: Optional[dict] = None) -> None:
    """Log a start banner and the scalar entries of a config section."""
    logger.info("=" * 80)
    logger.info(f"STARTING PIPELINE: {pipeline_name.upper()}")
    logger.info("=" * 80)

    if config:
        logger.info("Pipeline configuration:")
        for key, value in config.items():
            if key.startswith('_'):
                continue
            if isinstance(value, dict):
                logger.info(f"  {key}: {len(value)} parameters")
            else:
                logger.info(f"  {key}: {value}")


def log_pipeline_end(
    logger: logging.Logger,
    pipeline_name: str,
    success: bool = True,
    elapsed_time: Optional[float] = None
) -> None:
    """
    Log a completion banner.

    Args:
        logger: Component logger
        pipeline_name: Name used in the start banner
        success: Whether the pipeline reached its end without failures
        elapsed_time: Optional wall time in seconds
    """
    outcome = "COMPLETED SUCCESSFULLY" if success else "FAILED"
    logger.info("=" * 80)
    logger.info(f"PIPELINE {outcome}: {pipeline_name.upper()}")
    if elapsed_time is not None:
        logger.info(f"Total execution time: {format_duration(elapsed_time)}")
    logger.info("=" * 80)


def log_section(logger: logging.Logger, section_name: str) -> None:
    """Log a section header."""
    logger.info(f"\n{'=' * 20} {section_name.upper()} {'=' * 20}")
