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
Training loops for Boltzmann machines with callbacks and logging

This module drives trainers over batches:
- TrainingLoop: epochs of CD/PCD training with validation and callbacks
- pretrain_dbm: greedy layer-wise CD pretraining of a DBM's RBM stack
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence
import logging
import time

import torch
from tqdm import tqdm

from ..models.dbm import DeepBoltzmannMachine
from ..models.rbm import RestrictedBoltzmannMachine
from .callbacks import Callback
from .eval import BMEvaluator
from .trainers import BMTrainer, CDTrainer

logger = logging.getLogger(__name__)


def _batch_data(batch: Any) -> Any:
    # DataLoaders over TensorDatasets yield (data, ...) tuples
    if isinstance(batch, tuple):
        return batch[0]
    return batch


class TrainingLoop:
    """
    Training loop for Boltzmann machine trainers.

    Runs the trainer over ``train_batches`` each epoch, evaluates
    ``val_batches`` with mean-field reconstruction and calls the callbacks.
    """

    def __init__(
        self,
        trainer: BMTrainer,
        train_batches: Iterable[Any],
        val_batches: Optional[Iterable[Any]] = None,
        callbacks: Optional[List[Callback]] = None,
        log_interval: int = 10,
    ):
        """
        Initialize training loop.

        Args:
            trainer: CD or PCD trainer wrapping the machine
            train_batches: Re-iterable batches (list or DataLoader)
            val_batches: Validation batches (optional)
            callbacks: List of training callbacks
            log_interval: Interval (batches) for progress bar updates
        """
        self.trainer = trainer
        self.model = trainer.bm
        self.train_batches = train_batches
        self.val_batches = val_batches
        self.callbacks = callbacks or []
        self.log_interval = log_interval
        self.evaluator = BMEvaluator(self.model)

        self.current_epoch = 0
        self.global_step = 0
        self.training_history: Dict[str, List[float]] = {}

        logger.info(f"Training loop initialized for {type(self.model).__name__}")

    def train_epoch(self, epoch: int) -> Dict[str, float]:
        """
        Train for one epoch.

        Returns:
            metrics: Averages of the trainer's batch metrics, prefixed with train_
        """
        totals: Dict[str, float] = {}
        n_batches = 0
        epoch_start_time = time.time()

        pbar = tqdm(
            self.train_batches,
            desc=f"Epoch {epoch + 1}",
            disable=not logger.isEnabledFor(logging.INFO)
        )
        for batch_idx, batch in enumerate(pbar):
            batch_metrics = self.trainer.train_batch(_batch_data(batch))
            for key, value in batch_metrics.items():
                totals[key] = totals.get(key, 0.0) + value
            n_batches += 1
            self.global_step += 1

            if batch_idx % self.log_interval == 0:
                if 'reconstruction_error' in totals:
                    pbar.set_postfix({'recon': f"{totals['reconstruction_error'] / n_batches:.4f}"})
                for callback in self.callbacks:
                    callback.on_batch_end(batch=batch_idx, logs=batch_metrics, model=self.model)

        metrics = {f"train_{key}": value / max(n_batches, 1) for key, value in totals.items()}
        metrics['epoch_time'] = time.time() - epoch_start_time
        return metrics

    def validate_epoch(self) -> Dict[str, float]:
        if self.val_batches is None:
            return {}
        with torch.no_grad():
            metrics = self.evaluator.evaluate(_batch_data(b) for b in self.val_batches)
        return {f"val_{key}": value for key, value in metrics.items()}

    def train(self, epochs: int) -> Dict[str, List[float]]:
        """
        Main training loop.

        Args:
            epochs: Number of epochs to train

        Returns:
            history: Per-epoch metrics
        """
        logger.info(f"Starting training for {epochs} epochs")
        for callback in self.callbacks:
            callback.on_train_begin(logs={}, model=self.model)

        try:
            for epoch in range(epochs):
                self.current_epoch = epoch
                for callback in self.callbacks:
                    callback.on_epoch_begin(epoch=epoch, logs={}, model=self.model)

                epoch_logs = {**self.train_epoch(epoch), **self.validate_epoch()}
                for key, value in epoch_logs.items():
                    self.training_history.setdefault(key, []).append(value)

                log_msg = f"Epoch {epoch + 1}/{epochs}"
                for key in ('train_reconstruction_error', 'val_reconstruction_error'):
                    if key in epoch_logs:
                        log_msg += f" - {key}: {epoch_logs[key]:.4f}"
                log_msg += f" - time: {epoch_logs['epoch_time']:.2f}s"
                logger.info(log_msg)

                for callback in self.callbacks:
                    callback.on_epoch_end(epoch=epoch, logs=epoch_logs, model=self.model)

                stopper = next((c for c in self.callbacks if c.should_stop()), None)
                if stopper is not None:
                    logger.info(f"Early stopping triggered by {type(stopper).__name__}")
                    break

        except KeyboardInterrupt:
            logger.info("Training interrupted by user")

        except Exception as e:
            logger.error(f"Training failed with error: {e}")
            raise

        finally:
            for callback in self.callbacks:
                callback.on_train_end(logs=self.training_history, model=self.model)

        logger.info("Training completed")
        return self.training_history

    def evaluate(self, batches: Iterable[Any]) -> Dict[str, float]:
        """Evaluate the machine on test batches."""
        metrics = BMEvaluator(self.model).evaluate((_batch_data(b) for b in batches), progress=True)
        logger.info("Test Results: " + " ".join(f"{k}: {v:.4f}" for k, v in metrics.items()))
        return metrics


def _propagate(rbms: Sequence[RestrictedBoltzmannMachine], samples: Any) -> Any:
    """Hidden means of the top of ``rbms`` for ``samples``, keyed by chunk name."""
    for rbm in rbms:
        rbm.set_input(samples)
        rbm.set_hidden_mean()
        samples = {c.name: c.nodes.clone() for c in rbm.hidden_chunks if not c.is_conditioning}
    return samples


def pretrain_dbm(
    dbm: DeepBoltzmannMachine,
    batches: Iterable[Any],
    epochs_per_layer: int = 10,
    **trainer_kwargs
) -> List[Dict[str, List[float]]]:
    """
    Greedy layer-wise pretraining of a DBM with CD.

    The RBMs of ``dbm.layer_rbms()`` share the DBM's weights, so training
    them trains the DBM. Each RBM is trained on the hidden means that the
    already trained RBMs below it produce.

    Args:
        dbm: Machine to pretrain
        batches: Re-iterable batches of visible data
        epochs_per_layer: Epochs for each RBM
        **trainer_kwargs: Passed to CDTrainer

    Returns:
        histories: One training history per RBM
    """
    rbms = dbm.layer_rbms()
    histories = []
    for i, rbm in enumerate(rbms):
        logger.info(f"Pretraining layer {i + 1}/{len(rbms)}")
        trainer = CDTrainer(rbm, **trainer_kwargs)
        layer_batches = [_propagate(rbms[:i], _batch_data(b)) for b in batches]
        histories.append(TrainingLoop(trainer, layer_batches).train(epochs_per_layer))
    logger.info("Layer-wise pretraining completed")
    return histories
