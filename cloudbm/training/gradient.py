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
Segmented gradient accumulation and gradient descent

Trainable weights are registered as segments (the weight Parameters of
clouds, two per factored cloud) laid out back to back in one flat
accumulator. Trainers add sufficient statistics into the region of a
segment and signal the end of each batch; the optimizer then applies a
momentum update with L2 weight decay and resets the accumulator.
"""

from contextlib import contextmanager
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
import logging

import torch
import torch.nn as nn

from ..models.bm import BoltzmannMachine
from ..models.chunk import Chunk
from ..models.cloud import Cloud, _nodes

logger = logging.getLogger(__name__)

NodeFn = Callable[[Chunk], torch.Tensor]


class SegmentedGDTrainer:
    """
    Batch gradient descent with momentum over a set of weight segments.

    The accumulated gradient is divided by the number of inputs seen since
    the last update. Update rule per segment:

        velocity = momentum * velocity + learning_rate * (grad + weight_decay * w)
        w -= velocity
    """

    def __init__(
        self,
        segments: Iterable[nn.Parameter],
        learning_rate: float = 0.1,
        momentum: float = 0.9,
        weight_decay: float = 0.0,
        batch_size: Optional[int] = None,
    ):
        """
        Initialize optimizer.

        Args:
            segments: Weight Parameters to train (duplicates are ignored)
            learning_rate: Step size
            momentum: Momentum coefficient
            weight_decay: L2 regularization coefficient
            batch_size: Inputs to accumulate before updating (None updates at
                every ``maybe_update_weights`` call)
        """
        self.segments: List[nn.Parameter] = []
        self._offsets: Dict[int, int] = {}
        total = 0
        for segment in segments:
            if id(segment) in self._offsets:
                continue
            self._offsets[id(segment)] = total
            self.segments.append(segment)
            total += segment.numel()
        dtype = self.segments[0].dtype if self.segments else torch.float32
        device = self.segments[0].device if self.segments else None
        self.accumulator = torch.zeros(total, dtype=dtype, device=device)
        self.velocity = torch.zeros(total, dtype=dtype, device=device)
        self.learning_rate = learning_rate
        self.momentum = momentum
        self.weight_decay = weight_decay
        self.batch_size = batch_size
        self.n_inputs_in_batch = 0
        self.n_updates = 0

    @classmethod
    def for_bm(
        cls,
        bm: BoltzmannMachine,
        cloud_names: Optional[Sequence[str]] = None,
        **kwargs
    ) -> "SegmentedGDTrainer":
        """Optimizer over the clouds of ``bm`` (all of them, or ``cloud_names``)."""
        clouds = bm.clouds if cloud_names is None else [bm.find_cloud(n) for n in cloud_names]
        return cls([segment for cloud in clouds for segment in cloud.segments()], **kwargs)

    @property
    def n_weights(self) -> int:
        return self.accumulator.numel()

    @contextmanager
    def with_segment_gradient_accumulator(
        self, segment: nn.Parameter
    ) -> Iterator[Tuple[Optional[int], Optional[torch.Tensor]]]:
        """Yield (start, accumulator), or (None, None) if ``segment`` is not trained."""
        start = self._offsets.get(id(segment))
        if start is None:
            yield None, None
        else:
            yield start, self.accumulator

    def maybe_update_weights(self, n_new_inputs: int) -> bool:
        """
        Record ``n_new_inputs`` and update once a full batch has been seen.

        Returns:
            Whether the weights were updated
        """
        self.n_inputs_in_batch += n_new_inputs
        if self.batch_size is not None and self.n_inputs_in_batch < self.batch_size:
            return False
        self.update_weights()
        return True

    def update_weights(self) -> None:
        if self.n_inputs_in_batch == 0:
            return
        gradient = self.accumulator / self.n_inputs_in_batch
        for segment in self.segments:
            start = self._offsets[id(segment)]
            end = start + segment.numel()
            grad = gradient[start:end].view(segment.shape)
            if self.weight_decay > 0:
                grad = grad + self.weight_decay * segment.data
            velocity = self.velocity[start:end].view(segment.shape)
            velocity.mul_(self.momentum).add_(grad, alpha=self.learning_rate)
            segment.data.sub_(velocity)
        self.accumulator.zero_()
        self.n_inputs_in_batch = 0
        self.n_updates += 1


def with_segment_gradient_accumulator(segment: nn.Parameter, trainer: SegmentedGDTrainer):
    """Locate the accumulator region of ``segment`` in ``trainer``."""
    return trainer.with_segment_gradient_accumulator(segment)


def add_to_segment(trainer: SegmentedGDTrainer, segment: nn.Parameter,
                   values: torch.Tensor, multiplier: float = 1.0) -> bool:
    """Add ``multiplier * values`` to the region of ``segment``; False if untrained."""
    with trainer.with_segment_gradient_accumulator(segment) as (start, accumulator):
        if start is None:
            return False
        region = accumulator[start:start + segment.numel()].view(segment.shape)
        region.add_(values.to(region.dtype), alpha=multiplier)
    return True


def accumulate_cloud_statistics(
    trainer: SegmentedGDTrainer,
    bm: BoltzmannMachine,
    cloud: Cloud,
    multiplier: float,
    node_fn: NodeFn = _nodes,
) -> None:
    """
    Add ``multiplier * v1.T @ v2`` (per segment for factored clouds) to the
    gradient accumulator, reading chunk values through ``node_fn``.
    """
    values1, values2 = node_fn(cloud.chunk1), node_fn(cloud.chunk2)
    for segment, statistic in cloud.statistics(values1, values2):
        add_to_segment(trainer, segment, statistic, multiplier)


def maybe_update_weights(trainer: SegmentedGDTrainer, n_inputs: int) -> bool:
    return trainer.maybe_update_weights(n_inputs)
