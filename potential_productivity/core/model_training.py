"""
Quantile model training pipeline with spatiotemporal cross-validation.

Selects covariates by forward feature selection (cross-validated MAE) and
then tunes the gradient-boosting hyperparameters with a bounded number of
randomized Optuna trials (cross-validated RMSE) on the chosen features.
Fold evaluations are independent tasks dispatched to a process pool; the
pipeline object is the single coordinator that reduces fold scores and
keeps the best configuration.
"""

import time
from concurrent.futures import ProcessPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import optuna
import xgboost as xgb

from shared_utils import (
    setup_logging, resolve_config, ensure_directory, save_config,
    log_pipeline_start, log_pipeline_end, log_section
)
from shared_utils.central_data_paths_constants import SAMPLE_POINTS_FILE, MODEL_FILE, TRAINING_LOG_DIR

from .sample_dataset import load_sample_table, prepare_sample_records
from .spatiotemporal_cv import SpatiotemporalFold, create_spatiotemporal_folds
from .trained_model import TrainedModel

# Read-only data shared with fold workers, set once per pool
_SHARED: Dict[str, Any] = {}


def _init_fold_worker(X: np.ndarray, y: np.ndarray, folds: List[SpatiotemporalFold]) -> None:
    _SHARED['X'] = X
    _SHARED['y'] = y
    _SHARED['folds'] = {fold.fold_id: fold for fold in folds}


@dataclass(frozen=True)
class FoldTask:
    """One model fit on one fold's training rows, scored on its validation rows."""
    key: Any
    fold_id: int
    feature_indices: Tuple[int, ...]
    params: Dict[str, Any]


def build_booster(params: Dict[str, Any], quantile: Optional[float] = None) -> xgb.XGBRegressor:
    """
    Create an XGBoost regressor, quantile-loss when a quantile is given.
    
    Args:
        params: Booster hyperparameters (learning_rate, max_depth, ...)
        quantile: Target quantile, or None for a squared-error mean model
        
    Returns:
        Unfitted XGBRegressor
    """
    booster_params = dict(params)
    booster_params.setdefault('tree_method', 'hist')
    if quantile is None:
        booster_params['objective'] = 'reg:squarederror'
    else:
        booster_params['objective'] = 'reg:quantileerror'
        booster_params['quantile_alpha'] = quantile
    return xgb.XGBRegressor(**booster_params)


def evaluate_fold(task: FoldTask) -> Dict[str, Any]:
    """
    Fit the quantile model on one fold and return its validation error sums.
    
    Runs inside pool workers; reads the shared design matrix set by the
    pool initializer.
    """
    X, y = _SHARED['X'], _SHARED['y']
    fold = _SHARED['folds'][task.fold_id]
    columns = list(task.feature_indices)
    
    params = dict(task.params)
    quantile = params.pop('quantile')
    
    model = build_booster(params, quantile)
    model.fit(X[np.ix_(fold.train_indices, columns)], y[fold.train_indices])
    
    predicted = model.predict(X[np.ix_(fold.validation_indices, columns)])
    residuals = y[fold.validation_indices] - predicted
    
    return {
        'key': task.key,
        'fold_id': task.fold_id,
        'n': len(residuals),
        'abs_error_sum': float(np.sum(np.abs(residuals))),
        'sq_error_sum': float(np.sum(residuals ** 2))
    }


class CustomEarlyStopping:
    """Early stopping for Optuna studies that minimize their objective."""
    
    def __init__(self, patience: int = 40, min_trials: int = 20):
        """
        Initialize early stopping callback.
        
        Args:
            patience: Number of trials without improvement before stopping
            min_trials: Minimum number of trials before early stopping can trigger
        """
        self.patience = patience
        self.min_trials = min_trials
        self.best_value = None
        self.stagnation_counter = 0
        self.should_stop = False
    
    def __call__(self, study: optuna.Study, trial: optuna.trial.FrozenTrial) -> None:
        completed = [t for t in study.trials if t.state == optuna.trial.TrialState.COMPLETE]
        if not completed:
            return
        
        current_value = study.best_value
        if self.best_value is None or current_value < self.best_value:
            self.best_value = current_value
            self.stagnation_counter = 0
        else:
            self.stagnation_counter += 1
        
        if len(study.trials) >= self.min_trials and self.stagnation_counter >= self.patience:
            study.stop()
            self.should_stop = True


class QuantileModelTrainingPipeline:
    """
    Potential productivity model training.
    
    Fits a quantile-regression boosting model of productivity on climate and
    terrain covariates with spatiotemporal cross-validation, forward
    feature selection and randomized hyperparameter search.
    """
    
    def __init__(self, config: Optional[Union[str, Path, Dict]] = None):
        """
        Initialize the training pipeline.
        
        Args:
            config: Configuration dictionary or path to config file
        """
        self.config = resolve_config(
            config, "potential_productivity", ['samples', 'training.quantile', 'training.candidate_features']
        )
        
        self.logger = setup_logging(
            level=self.config['logging']['level'],
            component_name='quantile_training',
            log_file=self.config['logging'].get('log_file')
        )
        
        self.samples_config = self.config['samples']
        self.train_config = self.config['training']
        self.quantile = float(self.train_config['quantile'])
        if not 0.0 < self.quantile < 1.0:
            raise ValueError(f"Quantile must lie in (0, 1), got {self.quantile}")
        
        self.seed = int(self.train_config.get('random_seed', 42))
        self.num_workers = int(self.config.get('compute', {}).get('num_workers', 1))
        self.selection_config = self.train_config['feature_selection']
        self.tuning_config = self.train_config['hyperparameter_search']
        
        self.logger.info("Initialized QuantileModelTrainingPipeline")
    
    # ==================== WORKER POOL ====================
    
    @contextmanager
    def _fold_pool(self, X: np.ndarray, y: np.ndarray, folds: List[SpatiotemporalFold]):
        """Yield a process pool sharing X/y/folds, or None for sequential runs."""
        if self.num_workers <= 1:
            _init_fold_worker(X, y, folds)
            try:
                yield None
            finally:
                _SHARED.clear()
            return
        
        with ProcessPoolExecutor(
            max_workers=self.num_workers,
            initializer=_init_fold_worker,
            initargs=(X, y, folds)
        ) as executor:
            yield executor
    
    def _run_fold_tasks(self, tasks: List[FoldTask], executor: Optional[ProcessPoolExecutor]) -> Dict[Any, Dict[str, float]]:
        """Evaluate fold tasks and reduce them to pooled MAE/RMSE per task key."""
        if executor is None:
            results = [evaluate_fold(task) for task in tasks]
        else:
            results = list(executor.map(evaluate_fold, tasks))
        
        totals: Dict[Any, Dict[str, float]] = {}
        for result in results:
            entry = totals.setdefault(result['key'], {'n': 0, 'abs': 0.0, 'sq': 0.0})
            entry['n'] += result['n']
            entry['abs'] += result['abs_error_sum']
            entry['sq'] += result['sq_error_sum']
        
        return {
            key: {'mae': entry['abs'] / entry['n'], 'rmse': float(np.sqrt(entry['sq'] / entry['n']))}
            for key, entry in totals.items()
        }
    
    def _fold_tasks(self, key: Any, feature_indices: Sequence[int], params: Dict[str, Any],
                    folds: List[SpatiotemporalFold]) -> List[FoldTask]:
        task_params = dict(params)
        task_params['quantile'] = self.quantile
        task_params.setdefault('random_state', self.seed)
        task_params['n_jobs'] = 1
        return [FoldTask(key, fold.fold_id, tuple(feature_indices), task_params) for fold in folds]
    
    # ==================== FEATURE SELECTION ====================
    
    def forward_feature_selection(
        self,
        candidate_features: List[str],
        folds: List[SpatiotemporalFold],
        executor: Optional[ProcessPoolExecutor]
    ) -> Tuple[List[str], pd.DataFrame]:
        """
        Greedy forward selection on cross-validated MAE.
        
        Each round adds the remaining candidate with the lowest CV MAE. The
        search stops once `patience` consecutive additions failed to improve
        on the best score and at least `min_features` are selected, or when
        `max_features` is reached.
        
        Args:
            candidate_features: Column names in candidate order
            folds: Cross-validation folds
            executor: Process pool (None for sequential)
            
        Returns:
            Tuple of (selected features, per-step score log)
        """
        min_features = int(self.selection_config.get('min_features', 1))
        max_features = int(self.selection_config.get('max_features', len(candidate_features)))
        patience = int(self.selection_config.get('patience', 2))
        tolerance = float(self.selection_config.get('min_improvement', 0.0))
        base_params = self.train_config['base_hyperparameters']
        
        selected: List[str] = []
        remaining = list(candidate_features)
        best_score = np.inf
        best_size = 0
        stagnation = 0
        log_rows = []
        
        while remaining and len(selected) < max_features:
            step = len(selected) + 1
            tasks = []
            for feature in remaining:
                indices = [candidate_features.index(f) for f in selected + [feature]]
                tasks.extend(self._fold_tasks(feature, indices, base_params, folds))
            
            scores = self._run_fold_tasks(tasks, executor)
            
            for feature in remaining:
                log_rows.append({
                    'step': step,
                    'feature': feature,
                    'cv_mae': scores[feature]['mae'],
                    'cv_rmse': scores[feature]['rmse'],
                    'added': False
                })
            
            # Ties resolve to candidate order for determinism
            chosen = min(remaining, key=lambda f: (scores[f]['mae'], candidate_features.index(f)))
            step_score = scores[chosen]['mae']
            selected.append(chosen)
            remaining.remove(chosen)
            for row in log_rows[-len(scores):]:
                if row['feature'] == chosen:
                    row['added'] = True
            
            if step_score < best_score - tolerance:
                best_score = step_score
                best_size = len(selected)
                stagnation = 0
                self.logger.info(f"Step {step}: added {chosen} (CV MAE={step_score:.4f}, new best)")
            else:
                stagnation += 1
                self.logger.info(f"Step {step}: added {chosen} (CV MAE={step_score:.4f}, "
                                 f"no improvement {stagnation}/{patience})")
            
            if len(selected) >= min_features and stagnation >= patience:
                self.logger.info("Stopping forward selection: stagnation")
                break
        
        final_features = selected[:max(best_size, min(min_features, len(selected)))]
        self.logger.info(f"Selected {len(final_features)} features: {final_features} "
                         f"(best CV MAE={best_score:.4f})")
        
        return final_features, pd.DataFrame(log_rows)
    
    # ==================== HYPERPARAMETER SEARCH ====================
    
    def _suggest_params(self, trial: optuna.Trial) -> Dict[str, Any]:
        params = {}
        for name, bounds in self.tuning_config['search_space'].items():
            low, high = bounds
            if isinstance(low, int) and isinstance(high, int):
                params[name] = trial.suggest_int(name, low, high)
            else:
                params[name] = trial.suggest_float(name, float(low), float(high))
        return params
    
    def tune_hyperparameters(
        self,
        candidate_features: List[str],
        features: List[str],
        folds: List[SpatiotemporalFold],
        executor: Optional[ProcessPoolExecutor]
    ) -> Tuple[Dict[str, Any], float, pd.DataFrame]:
        """
        Randomized hyperparameter search minimizing cross-validated RMSE.
        
        Args:
            candidate_features: Column order of the shared design matrix
            features: Selected features (fixed during the search)
            folds: Cross-validation folds
            executor: Process pool (None for sequential)
            
        Returns:
            Tuple of (best hyperparameters, best CV RMSE, per-trial log)
        """
        indices = [candidate_features.index(f) for f in features]
        base_params = dict(self.train_config['base_hyperparameters'])
        
        def objective(trial: optuna.Trial) -> float:
            params = dict(base_params)
            params.update(self._suggest_params(trial))
            scores = self._run_fold_tasks(self._fold_tasks(trial.number, indices, params, folds), executor)
            trial.set_user_attr('cv_mae', scores[trial.number]['mae'])
            return scores[trial.number]['rmse']
        
        optuna.logging.set_verbosity(optuna.logging.WARNING)
        study = optuna.create_study(
            direction='minimize',
            sampler=optuna.samplers.RandomSampler(seed=self.seed)
        )
        
        # The base configuration is always evaluated as the first trial
        study.enqueue_trial({name: base_params[name] for name in self.tuning_config['search_space']
                             if name in base_params})
        
        early_stopping = CustomEarlyStopping(
            patience=int(self.tuning_config.get('patience', 40)),
            min_trials=int(self.tuning_config.get('min_trials', 20))
        )
        
        study.optimize(
            objective,
            n_trials=int(self.tuning_config['n_trials']),
            callbacks=[early_stopping],
            catch=(xgb.core.XGBoostError,)
        )
        
        completed = [t for t in study.trials if t.state == optuna.trial.TrialState.COMPLETE]
        if not completed:
            raise RuntimeError("All hyperparameter trials failed")
        
        best_params = dict(base_params)
        best_params.update(study.best_trial.params)
        
        log_rows = []
        for trial in study.trials:
            row = {'trial': trial.number, 'state': trial.state.name, 'cv_rmse': trial.value,
                   'cv_mae': trial.user_attrs.get('cv_mae')}
            row.update(trial.params)
            log_rows.append(row)
        
        self.logger.info(f"Hyperparameter search: {len(completed)} trials, best CV RMSE={study.best_value:.4f}")
        self.logger.info(f"Best hyperparameters: {best_params}")
        
        return best_params, float(study.best_value), pd.DataFrame(log_rows)
    
    # ==================== TRAINING ====================
    
    def fit_final_model(
        self,
        records: pd.DataFrame,
        features: List[str],
        params: Dict[str, Any],
        cv_score: Dict[str, float]
    ) -> TrainedModel:
        """Fit the quantile and mean boosters on all records."""
        X = records[features].to_numpy(dtype=np.float32)
        y = records['label'].to_numpy(dtype=np.float32)
        
        final_params = dict(params)
        final_params.setdefault('random_state', self.seed)
        final_params['n_jobs'] = self.num_workers
        
        quantile_model = build_booster(final_params, self.quantile)
        quantile_model.fit(X, y)
        
        mean_model = build_booster(final_params)
        mean_model.fit(X, y)
        
        stored_params = {k: v for k, v in final_params.items() if k != 'n_jobs'}
        
        return TrainedModel(
            quantile=self.quantile,
            features=list(features),
            hyperparameters=stored_params,
            cv_score=cv_score,
            quantile_model=quantile_model,
            mean_model=mean_model,
            label_column=self.samples_config.get('label_column', 'GPP'),
            feature_scaling=dict(self.samples_config.get('feature_scaling') or {}),
            anomaly_variables=list(self.samples_config.get('anomaly_variables', []))
        )
    
    def train(self, records: pd.DataFrame) -> Tuple[TrainedModel, Dict[str, pd.DataFrame]]:
        """
        Run feature selection, hyperparameter search and the final fit.
        
        Args:
            records: SampleRecord table from prepare_sample_records
            
        Returns:
            Tuple of (trained model, score logs keyed 'feature_selection'/'hyperparameter_search')
        """
        candidate_features = list(self.train_config['candidate_features'])
        
        folds = create_spatiotemporal_folds(
            records['space_index'].to_numpy(),
            records['time_index'].to_numpy(),
            n_folds=int(self.train_config.get('n_folds', 5)),
            seed=self.seed
        )
        self.logger.info(f"Built {len(folds)} spatiotemporal folds from {len(records)} records")
        
        X = records[candidate_features].to_numpy(dtype=np.float32)
        y = records['label'].to_numpy(dtype=np.float32)
        
        with self._fold_pool(X, y, folds) as executor:
            log_section(self.logger, "Forward feature selection")
            features, selection_log = self.forward_feature_selection(candidate_features, folds, executor)
            
            log_section(self.logger, "Hyperparameter search")
            params, best_rmse, tuning_log = self.tune_hyperparameters(
                candidate_features, features, folds, executor
            )
        
        selection_mae = float(selection_log.loc[
            selection_log['added'] & selection_log['feature'].isin(features), 'cv_mae'
        ].iloc[-1])
        cv_score = {'selection_mae': selection_mae, 'tuning_rmse': best_rmse, 'n_folds': len(folds)}
        
        log_section(self.logger, "Final fit")
        model = self.fit_final_model(records, features, params, cv_score)
        
        return model, {'feature_selection': selection_log, 'hyperparameter_search': tuning_log}
    
    def run_full_pipeline(
        self,
        sample_path: Optional[Union[str, Path]] = None,
        model_path: Optional[Union[str, Path]] = None,
        log_dir: Optional[Union[str, Path]] = None
    ) -> bool:
        """
        Load samples, train the model and persist the artifact and score logs.
        
        Returns:
            bool: True if training completed successfully
        """
        start_time = time.time()
        log_pipeline_start(self.logger, "Quantile model training", self.train_config)
        
        sample_path = Path(sample_path or SAMPLE_POINTS_FILE)
        model_path = Path(model_path or MODEL_FILE)
        log_dir = ensure_directory(log_dir or TRAINING_LOG_DIR)
        
        try:
            table = load_sample_table(sample_path)
            records = prepare_sample_records(
                table, self.train_config['candidate_features'], self.samples_config, seed=self.seed
            )
            
            model, score_logs = self.train(records)
            
            model.save(model_path)
            for name, log_df in score_logs.items():
                log_df.to_csv(log_dir / f"{name}_log.csv", index=False)
            save_config(self.config, log_dir / "training_config.yaml")
            
            self.logger.info(f"Model saved to: {model_path}")
            log_pipeline_end(self.logger, "Quantile model training", True, time.time() - start_time)
            return True
            
        except Exception as e:
            self.logger.error(f"Quantile model training failed: {e}")
            log_pipeline_end(self.logger, "Quantile model training", False, time.time() - start_time)
            return False
