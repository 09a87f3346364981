# Copyright 2025 CloudBM Contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Training callbacks for early stopping, weight checkpoints and progress logs

Callbacks receive the epoch logs and the machine being trained:
- EarlyStopping: stop when a monitored metric stops improving
- WeightCheckpoint: write raw cloud weights to disk
- ProgressLogger: log epoch metrics
"""

from typing import Any, Dict, Optional, Union
import logging
from pathlib import Path
from abc import ABC

import numpy as np

from ..models.bm import BoltzmannMachine

logger = logging.getLogger(__name__)


class Callback(ABC):
    """Base class for training callbacks."""

    def on_train_begin(self, logs: Dict[str, Any], model: BoltzmannMachine) -> None:
        """Called at the beginning of training."""
        pass

    def on_train_end(self, logs: Dict[str, Any], model: BoltzmannMachine) -> None:
        """Called at the end of training."""
        pass

    def on_epoch_begin(self, epoch: int, logs: Dict[str, Any], model: BoltzmannMachine) -> None:
        """Called at the beginning of each epoch."""
        pass

    def on_epoch_end(self, epoch: int, logs: Dict[str, Any], model: BoltzmannMachine) -> None:
        """Called at the end of each epoch."""
        pass

    def on_batch_end(self, batch: int, logs: Dict[str, Any], model: BoltzmannMachine) -> None:
        """Called at the end of each batch."""
        pass

    def should_stop(self) -> bool:
        return False


def _monitor_op(mode: str):
    if mode == 'min':
        return np.less, np.inf
    if mode == 'max':
        return np.greater, -np.inf
    raise ValueError(f"Mode {mode} not supported")


class EarlyStopping(Callback):
    """Stop training when a monitored metric stops improving."""

    def __init__(
        self,
        monitor: str = 'val_reconstruction_error',
        patience: int = 10,
        min_delta: float = 0.0,
        mode: str = 'min',
        restore_best_weights: bool = True,
    ):
        """
        Initialize early stopping callback.

        Args:
            monitor: Metric to monitor
            patience: Number of epochs with no improvement to wait
            min_delta: Minimum change to qualify as improvement
            mode: 'min' for minimization, 'max' for maximization
            restore_best_weights: Copy the best weights back when stopping
        """
        self.monitor = monitor
        self.patience = patience
        self.min_delta = min_delta
        self.mode = mode
        self.restore_best_weights = restore_best_weights
        self.monitor_op, self.best = _monitor_op(mode)
        self.wait = 0
        self.stopped_epoch = 0
        self.best_weights = None

    def on_train_begin(self, logs: Dict[str, Any], model: BoltzmannMachine) -> None:
        self.wait = 0
        self.stopped_epoch = 0
        self.best = np.inf if self.mode == 'min' else -np.inf
        self.best_weights = None

    def on_epoch_end(self, epoch: int, logs: Dict[str, Any], model: BoltzmannMachine) -> None:
        current = logs.get(self.monitor)
        if current is None:
            logger.warning(f"Early stopping metric '{self.monitor}' not found in logs")
            return

        improvement = current + self.min_delta if self.mode == 'min' else current - self.min_delta
        if self.monitor_op(improvement, self.best):
            self.best = current
            self.wait = 0
            if self.restore_best_weights:
                self.best_weights = {k: v.clone() for k, v in model.state_dict().items()}
            return

        self.wait += 1
        if self.wait >= self.patience:
            self.stopped_epoch = epoch
            logger.info(f"Early stopping at epoch {epoch + 1}")
            if self.restore_best_weights and self.best_weights is not None:
                # load_state_dict copies in place, so shared weights stay shared
                model.load_state_dict(self.best_weights)
                logger.info("Restored best weights")

    def should_stop(self) -> bool:
        return self.wait >= self.patience


class WeightCheckpoint(Callback):
    """
    Write the machine's raw weights every ``period`` epochs.

    ``filepath`` may contain ``{epoch}``. With ``save_best_only`` the file is
    written only when the monitored metric improves.
    """

    def __init__(
        self,
        filepath: Union[str, Path],
        monitor: str = 'val_reconstruction_error',
        save_best_only: bool = False,
        mode: str = 'min',
        period: int = 1,
        dtype: str = '<f8',
    ):
        self.filepath = Path(filepath)
        self.monitor = monitor
        self.save_best_only = save_best_only
        self.mode = mode
        self.period = period
        self.dtype = dtype
        self.monitor_op, self.best = _monitor_op(mode)
        self.epochs_since_last_save = 0
        self.last_saved: Optional[Path] = None

    def on_train_begin(self, logs: Dict[str, Any], model: BoltzmannMachine) -> None:
        self.best = np.inf if self.mode == 'min' else -np.inf
        self.epochs_since_last_save = 0

    def on_epoch_end(self, epoch: int, logs: Dict[str, Any], model: BoltzmannMachine) -> None:
        self.epochs_since_last_save += 1
        if self.epochs_since_last_save < self.period:
            return
        self.epochs_since_last_save = 0

        if self.save_best_only:
            current = logs.get(self.monitor)
            if current is None:
                logger.warning(f"Checkpoint metric '{self.monitor}' not found in logs")
                return
            if not self.monitor_op(current, self.best):
                return
            self.best = current

        filepath = Path(str(self.filepath).format(epoch=epoch + 1))
        model.save_weights(filepath, dtype=self.dtype)
        self.last_saved = filepath


class ProgressLogger(Callback):
    """Log epoch metrics every ``log_freq`` epochs."""

    def __init__(self, log_freq: int = 1):
        self.log_freq = log_freq

    def on_train_begin(self, logs: Dict[str, Any], model: BoltzmannMachine) -> None:
        logger.info(f"Training {type(model).__name__} with {model.n_weights()} weights")

    def on_epoch_end(self, epoch: int, logs: Dict[str, Any], model: BoltzmannMachine) -> None:
        if (epoch + 1) % self.log_freq == 0:
            metrics = ", ".join(
                f"{k}: {v:.4f}" for k, v in logs.items() if isinstance(v, (int, float))
            )
            logger.info(f"Epoch {epoch + 1} - {metrics}")

    def on_train_end(self, logs: Dict[str, Any], model: BoltzmannMachine) -> None:
        logger.info("Training finished")
