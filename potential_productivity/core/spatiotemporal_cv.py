"""
Spatiotemporal cross-validation folds.

Locations (space blocks) and years are each split into k groups. Fold i
validates on records whose space block AND year fall in group i and trains
on records whose space block and year both fall outside group i. Records
sharing only one of the two with the validation set are left out of that
fold, so no validation record shares a location or a year with training.
"""

from dataclasses import dataclass
from typing import List

import numpy as np

from shared_utils import get_logger


@dataclass(frozen=True)
class SpatiotemporalFold:
    """Row indices of one cross-validation fold."""
    fold_id: int
    train_indices: np.ndarray
    validation_indices: np.ndarray


def _group_labels(values: np.ndarray, n_groups: int, rng: np.random.Generator) -> np.ndarray:
    unique_values = np.unique(values)
    shuffled = rng.permutation(unique_values)
    group_of_value = {value: i % n_groups for i, value in enumerate(shuffled)}
    return np.array([group_of_value[v] for v in values])


def create_spatiotemporal_folds(
    space_index: np.ndarray,
    time_index: np.ndarray,
    n_folds: int,
    seed: int
) -> List[SpatiotemporalFold]:
    """
    Build leave-location-and-time-out folds.
    
    Args:
        space_index: Spatial block of each record
        time_index: Year (or time block) of each record
        n_folds: Number of space groups and time groups
        seed: Seed for the group shuffles
        
    Returns:
        List of folds with non-empty training and validation sets
        
    Raises:
        ValueError: If fewer than two distinct blocks or years exist, or no usable fold remains
    """
    logger = get_logger('spatiotemporal_cv')
    
    space_index = np.asarray(space_index)
    time_index = np.asarray(time_index)
    
    n_space = len(np.unique(space_index))
    n_time = len(np.unique(time_index))
    n_groups = min(n_folds, n_space, n_time)
    if n_groups < 2:
        raise ValueError(f"Need at least two space blocks and two years for spatiotemporal CV "
                         f"(got {n_space} blocks, {n_time} years)")
    if n_groups < n_folds:
        logger.warning(f"Reducing CV folds from {n_folds} to {n_groups} (blocks={n_space}, years={n_time})")
    
    rng = np.random.default_rng(seed)
    space_groups = _group_labels(space_index, n_groups, rng)
    time_groups = _group_labels(time_index, n_groups, rng)
    
    folds = []
    for group in range(n_groups):
        in_space = space_groups == group
        in_time = time_groups == group
        
        validation = np.flatnonzero(in_space & in_time)
        train = np.flatnonzero(~in_space & ~in_time)
        
        if len(validation) == 0 or len(train) == 0:
            logger.warning(f"Skipping fold {group}: train={len(train)}, validation={len(validation)}")
            continue
        
        folds.append(SpatiotemporalFold(group, train, validation))
        logger.debug(f"Fold {group}: train={len(train)}, validation={len(validation)}")
    
    if not folds:
        raise ValueError("No usable spatiotemporal folds could be built")
    
    return folds
