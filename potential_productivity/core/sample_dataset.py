"""
Sample dataset preparation for potential productivity modelling.

Consumes the point-sample table produced upstream and turns it into
SampleRecord rows: (location_id, year, label, features..., space_index,
time_index). Upstream tables come in a wide layout where each dynamic
variable has one column per year named <VARIABLE>_<YEAR> (GPP_2008,
precipitation_2008, ...) and static covariates are plain columns.
"""

import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import geopandas as gpd
from sklearn.cluster import KMeans

from shared_utils import get_logger, validate_file_exists

MEAN_SUFFIX = '_mean'
ANOMALY_SUFFIX = '_anomaly'

RECORD_COLUMNS = ['location_id', 'year', 'label', 'space_index', 'time_index']


def load_sample_table(path: Union[str, Path]) -> pd.DataFrame:
    """
    Load the upstream sample table.
    
    CSV files are read with pandas; any other format goes through geopandas
    and point geometries are turned into 'x'/'y' columns.
    """
    path = validate_file_exists(path, "Sample table")
    
    if path.suffix.lower() == '.csv':
        return pd.read_csv(path)
    
    gdf = gpd.read_file(path)
    table = pd.DataFrame(gdf.drop(columns='geometry'))
    if gdf.geometry is not None and not gdf.geometry.is_empty.all():
        table['x'] = gdf.geometry.x.values
        table['y'] = gdf.geometry.y.values
    return table


def reshape_wide_samples(
    wide: pd.DataFrame,
    dynamic_variables: Sequence[str],
    id_column: str = 'id'
) -> pd.DataFrame:
    """
    Pivot <VARIABLE>_<YEAR> columns into one row per location and year.
    
    Args:
        wide: Wide sample table
        dynamic_variables: Variable prefixes that vary per year (e.g. GPP, precipitation)
        id_column: Location identifier column
        
    Returns:
        Long table with 'year', one column per dynamic variable and all static columns
    """
    pattern = re.compile(r'^(' + '|'.join(re.escape(v) for v in dynamic_variables) + r')_(\d{4})$')
    dynamic_cols = [c for c in wide.columns if pattern.match(str(c))]
    
    if not dynamic_cols:
        raise ValueError(f"No per-year columns found for variables {list(dynamic_variables)}")
    
    static_cols = [c for c in wide.columns if c not in dynamic_cols]
    if id_column not in static_cols:
        raise KeyError(f"Location id column '{id_column}' not found")
    
    long = wide.melt(id_vars=[id_column], value_vars=dynamic_cols, var_name='_index', value_name='_value')
    parts = long['_index'].str.extract(pattern)
    long['_variable'] = parts[0]
    long['year'] = parts[1].astype(int)
    
    reshaped = (
        long.set_index([id_column, 'year', '_variable'])['_value']
        .unstack('_variable')
        .reset_index()
    )
    reshaped.columns.name = None
    
    return reshaped.merge(wide[static_cols], on=id_column, how='left')


def apply_feature_scaling(table: pd.DataFrame, scaling: Optional[Dict[str, float]]) -> pd.DataFrame:
    """Divide covariates by fixed scale factors (e.g. precipitation / 2000)."""
    if not scaling:
        return table
    
    table = table.copy()
    for column, divisor in scaling.items():
        if column in table.columns:
            table[column] = table[column] / float(divisor)
    return table


def add_location_means(table: pd.DataFrame, variables: Sequence[str], id_column: str) -> pd.DataFrame:
    """Add <variable>_mean columns: the multi-year mean of each variable per location."""
    table = table.copy()
    for variable in variables:
        table[variable + MEAN_SUFFIX] = table.groupby(id_column)[variable].transform('mean')
    return table


def add_anomaly_features(table: pd.DataFrame, variables: Sequence[str]) -> pd.DataFrame:
    """
    Add <variable>_anomaly = year value / multi-year mean.
    
    Requires <variable>_mean columns. A non-positive mean gives NaN, so the
    row is later dropped as missing rather than imputed.
    """
    table = table.copy()
    for variable in variables:
        mean_col = variable + MEAN_SUFFIX
        if mean_col not in table.columns:
            raise KeyError(f"Missing multi-year mean column '{mean_col}' for anomaly of '{variable}'")
        means = table[mean_col].to_numpy(dtype=float)
        values = table[variable].to_numpy(dtype=float)
        with np.errstate(divide='ignore', invalid='ignore'):
            table[variable + ANOMALY_SUFFIX] = np.where(means > 0, values / means, np.nan)
    return table


def assign_space_blocks(
    table: pd.DataFrame,
    n_blocks: Optional[int],
    seed: int,
    id_column: str = 'location_id',
    coordinate_columns: Sequence[str] = ('x', 'y')
) -> np.ndarray:
    """
    Assign each record a spatial block index.
    
    An existing 'space_block' column wins. Otherwise locations are grouped
    by k-means on their coordinates; without coordinates every location
    is its own block.
    """
    if 'space_block' in table.columns:
        return pd.factorize(table['space_block'])[0]
    
    locations = table[id_column]
    
    has_coords = all(c in table.columns for c in coordinate_columns)
    n_locations = locations.nunique()
    if not has_coords or not n_blocks or n_blocks >= n_locations:
        return pd.factorize(locations)[0]
    
    coords = table.groupby(id_column)[list(coordinate_columns)].first()
    kmeans = KMeans(n_clusters=n_blocks, random_state=seed, n_init=10)
    block_of_location = pd.Series(kmeans.fit_predict(coords.values), index=coords.index)
    
    return block_of_location.loc[locations].to_numpy()


def prepare_sample_records(
    table: pd.DataFrame,
    candidate_features: Sequence[str],
    config: Dict,
    seed: int = 0
) -> pd.DataFrame:
    """
    Build the SampleRecord table used for model fitting.
    
    Steps: reshape (if wide), scale covariates, derive anomaly features,
    drop rows missing the label or any candidate feature, drop non-positive
    labels, attach space and time indices.
    
    Args:
        table: Upstream sample table (wide or already long)
        candidate_features: Features the model may select from
        config: 'samples' configuration section
        seed: Seed for spatial blocking
        
    Returns:
        DataFrame with RECORD_COLUMNS plus one column per candidate feature
    """
    logger = get_logger('sample_dataset')
    
    id_column = config.get('id_column', 'id')
    label_column = config.get('label_column', 'GPP')
    dynamic_variables = config.get('dynamic_variables', [label_column])
    anomaly_variables = config.get('anomaly_variables', [])
    
    if 'year' not in table.columns:
        table = reshape_wide_samples(table, dynamic_variables, id_column=id_column)
    
    table = apply_feature_scaling(table, config.get('feature_scaling'))
    
    if anomaly_variables:
        table = add_location_means(table, anomaly_variables, id_column)
        table = add_anomaly_features(table, anomaly_variables)
    
    missing_features = [f for f in candidate_features if f not in table.columns]
    if missing_features:
        raise KeyError(f"Candidate features not found in sample table: {missing_features}")
    
    n_total = len(table)
    required = [label_column] + list(candidate_features)
    table = table.dropna(subset=required)
    n_missing = n_total - len(table)
    
    table = table[table[label_column] > 0]
    n_nonpositive = n_total - n_missing - len(table)
    
    logger.info(f"Sample records: {len(table)} kept, {n_missing} dropped for missing covariates, "
                f"{n_nonpositive} dropped for non-positive {label_column}")
    
    if table.empty:
        raise ValueError("No valid sample records after filtering")
    
    records = pd.DataFrame({
        'location_id': table[id_column].to_numpy(),
        'year': table['year'].astype(int).to_numpy(),
        'label': table[label_column].astype(float).to_numpy()
    })
    for feature in candidate_features:
        records[feature] = table[feature].astype(float).to_numpy()
    
    extra_coords = [c for c in ('x', 'y', 'space_block') if c in table.columns]
    for column in extra_coords:
        records[column] = table[column].to_numpy()
    
    records['space_index'] = assign_space_blocks(
        records, config.get('n_space_blocks'), seed, id_column='location_id'
    )
    records['time_index'] = records['year'].to_numpy()
    
    return records.reset_index(drop=True)
