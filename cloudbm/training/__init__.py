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
Training module for CloudBM.

This module provides the training infrastructure for Boltzmann machines:
- SegmentedGDTrainer: Flat gradient accumulator with momentum updates
- CDTrainer / PCDTrainer: Contrastive Divergence and its persistent variant
- SparsityGradientSource: Sparsity pressure on hidden activations
- TrainingLoop, pretrain_dbm: Epoch orchestration with callbacks
- BMEvaluator: Reconstruction based evaluation
"""

from .gradient import (
    SegmentedGDTrainer,
    accumulate_cloud_statistics,
    add_to_segment,
    maybe_update_weights,
    with_segment_gradient_accumulator,
)
from .trainers import (
    HALF_HEARTED,
    BMTrainer,
    CDTrainer,
    PCDTrainer,
    SparsityGradientSource,
    make_sparsity_sources,
)
from .eval import BMEvaluator, cross_entropy, misclassification, reconstruction_error
from .callbacks import Callback, EarlyStopping, ProgressLogger, WeightCheckpoint
from .loop import TrainingLoop, pretrain_dbm

__all__ = [
    # Gradient accumulation
    "SegmentedGDTrainer",
    "accumulate_cloud_statistics",
    "add_to_segment",
    "maybe_update_weights",
    "with_segment_gradient_accumulator",

    # Trainers
    "HALF_HEARTED",
    "BMTrainer",
    "CDTrainer",
    "PCDTrainer",
    "SparsityGradientSource",
    "make_sparsity_sources",

    # Evaluation
    "BMEvaluator",
    "cross_entropy",
    "misclassification",
    "reconstruction_error",

    # Loops and callbacks
    "Callback",
    "EarlyStopping",
    "ProgressLogger",
    "WeightCheckpoint",
    "TrainingLoop",
    "pretrain_dbm",
]
