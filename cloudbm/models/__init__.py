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
Models module for CloudBM.

This module provides the chunk/cloud building blocks and the machines built
from them:
- Chunks: sigmoid, gaussian, conditioning, constant, temporal, grouped
  (softmax, constrained Poisson) units
- Clouds: full and factored connections between chunks
- BoltzmannMachine, RestrictedBoltzmannMachine, DeepBoltzmannMachine
"""

from .chunk import (
    CHUNK_KINDS,
    Chunk,
    SigmoidChunk,
    GaussianChunk,
    ConditioningChunk,
    ConstantChunk,
    TemporalChunk,
    NormalizedGroupChunk,
    ExpNormalizedGroupChunk,
    SoftmaxChunk,
    ConstrainedPoissonChunk,
    make_chunk,
)
from .cloud import (
    CLOUD_KINDS,
    MERGE,
    CloudSpec,
    FullCloud,
    FactoredCloud,
    default_cloud_specs,
    merge_cloud_specs,
    make_cloud,
)
from .bm import (
    BoltzmannMachine,
    MeanFieldSupervisor,
    default_mean_field_supervisor,
    hijack_means_to_activation,
    node_change,
)
from .rbm import RestrictedBoltzmannMachine, make_rbm
from .dbm import DeepBoltzmannMachine, classify_layer_chunks

__all__ = [
    # Chunks
    "CHUNK_KINDS",
    "Chunk",
    "SigmoidChunk",
    "GaussianChunk",
    "ConditioningChunk",
    "ConstantChunk",
    "TemporalChunk",
    "NormalizedGroupChunk",
    "ExpNormalizedGroupChunk",
    "SoftmaxChunk",
    "ConstrainedPoissonChunk",
    "make_chunk",

    # Clouds
    "CLOUD_KINDS",
    "MERGE",
    "CloudSpec",
    "FullCloud",
    "FactoredCloud",
    "default_cloud_specs",
    "merge_cloud_specs",
    "make_cloud",

    # Machines
    "BoltzmannMachine",
    "MeanFieldSupervisor",
    "default_mean_field_supervisor",
    "hijack_means_to_activation",
    "node_change",
    "RestrictedBoltzmannMachine",
    "make_rbm",
    "DeepBoltzmannMachine",
    "classify_layer_chunks",
]
