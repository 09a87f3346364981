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
Evaluation of Boltzmann machines on held-out batches

Measurers compare the clamped ``inputs`` of visible chunks with their
``nodes`` after a reconstruction and return (sum, count) pairs so that
results can be aggregated over batches:
- reconstruction_error: squared error per unit
- misclassification: wrong argmax per softmax group
- cross_entropy: -sum(inputs * log(nodes)) per softmax group
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import logging

import torch
from tqdm import tqdm

from ..models.bm import BoltzmannMachine
from ..models.chunk import Chunk, NormalizedGroupChunk

logger = logging.getLogger(__name__)

RECONSTRUCTIONS = ("mean-field", "sample")


def _measured_chunks(bm: BoltzmannMachine, chunks: Optional[Sequence[Chunk]]) -> List[Chunk]:
    chunks = bm.visible_chunks if chunks is None else chunks
    return [c for c in chunks if c.inputs is not None]


def reconstruction_error(
    bm: BoltzmannMachine, chunks: Optional[Sequence[Chunk]] = None
) -> Tuple[float, int]:
    """Sum of squared (inputs - nodes) and the number of units compared."""
    total, count = 0.0, 0
    for chunk in _measured_chunks(bm, chunks):
        total += torch.sum((chunk.inputs - chunk.nodes) ** 2).item()
        count += chunk.inputs.numel()
    return total, count


def _groups(chunk: Chunk, values: torch.Tensor) -> torch.Tensor:
    group_size = getattr(chunk, 'group_size', chunk.size)
    return values.reshape(-1, group_size)


def misclassification(
    bm: BoltzmannMachine, chunks: Optional[Sequence[Chunk]] = None
) -> Tuple[float, int]:
    """Number of groups whose predicted argmax differs from the input's."""
    wrong, count = 0.0, 0
    for chunk in _measured_chunks(bm, chunks):
        if not isinstance(chunk, NormalizedGroupChunk):
            continue
        targets = _groups(chunk, chunk.inputs).argmax(dim=1)
        predictions = _groups(chunk, chunk.nodes).argmax(dim=1)
        wrong += (targets != predictions).sum().item()
        count += targets.numel()
    return wrong, count


def cross_entropy(
    bm: BoltzmannMachine, chunks: Optional[Sequence[Chunk]] = None, eps: float = 1e-12
) -> Tuple[float, int]:
    """Cross-entropy of grouped inputs against the reconstructed means."""
    total, count = 0.0, 0
    for chunk in _measured_chunks(bm, chunks):
        if not isinstance(chunk, NormalizedGroupChunk):
            continue
        inputs = _groups(chunk, chunk.inputs)
        nodes = _groups(chunk, chunk.nodes)
        total += -torch.sum(inputs * torch.log(nodes.clamp_min(eps))).item()
        count += inputs.shape[0]
    return total, count


class BMEvaluator:
    """
    Aggregates measurers over batches of held-out data.

    Each batch is clamped, reconstructed (mean field or with sampled
    hidden units) and measured.
    """

    def __init__(self, bm: BoltzmannMachine, reconstruction: str = "mean-field"):
        if reconstruction not in RECONSTRUCTIONS:
            raise ValueError(f"Unknown reconstruction: {reconstruction}")
        self.bm = bm
        self.reconstruction = reconstruction

    def reconstruct(self, samples: Any) -> None:
        self.bm.set_input(samples)
        if self.reconstruction == "mean-field":
            self.bm.mean_field_reconstruct()
        else:
            self.bm.sample_reconstruct()

    def evaluate(self, batches: Iterable[Any], progress: bool = False) -> Dict[str, float]:
        """
        Evaluate on batches.

        Args:
            batches: Iterable of inputs accepted by ``bm.set_input``
            progress: Show a progress bar

        Returns:
            metrics: reconstruction_error, and for grouped chunks
                misclassification and cross_entropy
        """
        sums = {'reconstruction_error': [0.0, 0], 'misclassification': [0.0, 0],
                'cross_entropy': [0.0, 0]}
        measurers = {'reconstruction_error': reconstruction_error,
                     'misclassification': misclassification,
                     'cross_entropy': cross_entropy}
        for batch in tqdm(batches, desc="Evaluating", disable=not progress):
            self.reconstruct(batch)
            for key, measure in measurers.items():
                total, count = measure(self.bm)
                sums[key][0] += total
                sums[key][1] += count
        metrics = {key: total / count for key, (total, count) in sums.items() if count}
        logger.debug(f"Evaluation: {metrics}")
        return metrics
