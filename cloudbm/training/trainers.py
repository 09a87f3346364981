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
Contrastive Divergence and Persistent Contrastive Divergence trainers

Each training batch goes through the same steps:
1. clamp the batch onto the visible chunks
2. positive phase: hidden means (optionally sampled) from the data, with
   statistics accumulated with multiplier -1
3. negative phase: Gibbs sampling from the model, statistics accumulated
   with multiplier +1
4. sparsity gradients, if any, are flushed into the same accumulator
5. the optimizer is told how many inputs the batch had

Sampling policies: ``visible_sampling`` is a bool; ``hidden_sampling`` is
False (mean field), True (sample) or ``"half-hearted"`` (sample to move the
chain but read the means for the statistics).
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
import logging

import torch

from ..models.bm import BoltzmannMachine
from ..models.chunk import Chunk, ConditioningChunk, TemporalChunk
from ..models.cloud import FullCloud, _nodes
from ..models.rbm import RestrictedBoltzmannMachine
from .gradient import (
    NodeFn,
    SegmentedGDTrainer,
    accumulate_cloud_statistics,
    add_to_segment,
    maybe_update_weights,
)

logger = logging.getLogger(__name__)

HALF_HEARTED = "half-hearted"
HiddenSampling = Union[bool, str]


def _means_or_nodes(chunk: Chunk) -> torch.Tensor:
    return chunk.means if chunk.means is not None else chunk.nodes


class SparsityGradientSource:
    """
    Extra gradient pushing the mean activation of ``chunk`` toward ``target``.

    Tracks damped batch averages of the chunk's means together with the
    nodes of the other chunk of ``cloud``. In ``normal`` mode the joint
    products E[o_i h_j] are tracked; in ``cheating`` mode only the marginals
    E[o_i] and E[h_j], which is cheaper but gives a wrong gradient when the
    two units are rarely on at the same time. The gradient for the weight
    between o_i and h_j is

        cost * (E[o_i h_j] - target * E[o_i])      (normal)
        cost * E[o_i] * (E[h_j] - target)          (cheating)
    """

    KINDS = ("normal", "cheating")

    def __init__(
        self,
        cloud: FullCloud,
        chunk: Chunk,
        target: float,
        cost: float = 0.1,
        damping: float = 0.9,
        kind: str = "normal",
    ):
        if not isinstance(cloud, FullCloud):
            raise ValueError(f"Sparsity is only supported on full clouds, not {cloud.name!r}")
        if chunk is not cloud.chunk1 and chunk is not cloud.chunk2:
            raise ValueError(f"Chunk {chunk.name!r} is not connected by cloud {cloud.name!r}")
        if kind not in self.KINDS:
            raise ValueError(f"Unknown sparsity kind: {kind}")
        self.cloud = cloud
        self.chunk = chunk
        self.other_chunk = cloud.chunk2 if chunk is cloud.chunk1 else cloud.chunk1
        self.target = target
        self.cost = cost
        self.damping = damping
        self.kind = kind
        self.products: Optional[torch.Tensor] = None
        self.other_sums: Optional[torch.Tensor] = None
        self.chunk_sums: Optional[torch.Tensor] = None

    def _damp(self, old: Optional[torch.Tensor], new: torch.Tensor) -> torch.Tensor:
        if old is None:
            return new
        return self.damping * old + (1.0 - self.damping) * new

    def accumulate(self) -> None:
        """Fold the current positive-phase means into the damped averages."""
        assert self.chunk.n_stripes == self.other_chunk.n_stripes, \
            f"Stripe mismatch between {self.chunk.name!r} and {self.other_chunk.name!r}"
        values = _means_or_nodes(self.chunk)
        other = self.other_chunk.nodes
        n_stripes = values.shape[0]
        self.other_sums = self._damp(self.other_sums, other.mean(dim=0))
        if self.kind == "normal":
            self.products = self._damp(self.products, other.t() @ values / n_stripes)
        else:
            self.chunk_sums = self._damp(self.chunk_sums, values.mean(dim=0))

    def gradient(self) -> Optional[torch.Tensor]:
        """Per-input gradient shaped like [other_chunk.size, chunk.size]."""
        if self.other_sums is None:
            return None
        if self.kind == "normal":
            grad = self.products - self.target * self.other_sums.unsqueeze(1)
        else:
            grad = self.other_sums.unsqueeze(1) * (self.chunk_sums - self.target).unsqueeze(0)
        return self.cost * grad

    def flush(self, trainer: SegmentedGDTrainer, n_inputs: int) -> None:
        grad = self.gradient()
        if grad is None:
            return
        if self.chunk is self.cloud.chunk1:
            grad = grad.t()
        add_to_segment(trainer, self.cloud.weights, grad, float(n_inputs))


def make_sparsity_sources(
    bm: BoltzmannMachine,
    targets: Mapping[str, float],
    cost: float = 0.1,
    damping: float = 0.9,
    kind: str = "normal",
) -> List[SparsityGradientSource]:
    """
    One sparsity source per (cloud, chunk) pair for the named chunks.

    Args:
        bm: Machine whose clouds are considered
        targets: Chunk name -> target mean activation
        cost: Weight of the sparsity gradient
        damping: Exponential damping across batches
        kind: "normal" or "cheating"
    """
    sources = []
    for name, target in targets.items():
        chunk = bm.find_chunk(name)
        for cloud in bm.clouds:
            if chunk is cloud.chunk1 or chunk is cloud.chunk2:
                sources.append(SparsityGradientSource(cloud, chunk, target, cost=cost,
                                                      damping=damping, kind=kind))
    return sources


class BMTrainer:
    """
    Base class of the contrastive trainers.

    Subclasses implement ``positive_phase`` and ``negative_phase``.
    """

    def __init__(
        self,
        bm: BoltzmannMachine,
        optimizer: Optional[SegmentedGDTrainer] = None,
        visible_sampling: bool = False,
        hidden_sampling: HiddenSampling = HALF_HEARTED,
        sparsity_sources: Optional[Sequence[SparsityGradientSource]] = None,
        **optimizer_kwargs
    ):
        """
        Initialize trainer.

        Args:
            bm: Machine to train
            optimizer: Gradient sink; by default one over all clouds of bm
            visible_sampling: Sample the visible chunks in the negative phase
            hidden_sampling: False, True or "half-hearted"
            sparsity_sources: Extra sparsity gradients
            **optimizer_kwargs: Passed to SegmentedGDTrainer.for_bm
        """
        if hidden_sampling not in (False, True, HALF_HEARTED):
            raise ValueError(f"Unknown hidden_sampling: {hidden_sampling!r}")
        self.bm = bm
        self.optimizer = optimizer or SegmentedGDTrainer.for_bm(bm, **optimizer_kwargs)
        self.visible_sampling = visible_sampling
        self.hidden_sampling = hidden_sampling
        self.sparsity_sources = list(sparsity_sources or [])
        self.n_inputs = 0
        logger.info(
            f"{type(self).__name__} created: {self.optimizer.n_weights} trainable weights, "
            f"visible_sampling={visible_sampling}, hidden_sampling={hidden_sampling}"
        )

    def statistics_node_fn(self, bm: BoltzmannMachine) -> NodeFn:
        """Which buffer the statistics read: hidden means when half-hearted."""
        if self.hidden_sampling != HALF_HEARTED:
            return _nodes
        hidden_ids = {id(c) for c in bm.hidden_chunks}
        return lambda chunk: _means_or_nodes(chunk) if id(chunk) in hidden_ids else chunk.nodes

    def accumulate_phase_statistics(self, bm: BoltzmannMachine, multiplier: float) -> None:
        node_fn = self.statistics_node_fn(bm)
        for cloud in bm.clouds:
            accumulate_cloud_statistics(self.optimizer, bm, cloud, multiplier, node_fn)

    def accumulate_positive_phase_statistics(self, multiplier: float = -1.0) -> None:
        self.accumulate_phase_statistics(self.bm, multiplier)

    def accumulate_negative_phase_statistics(self, multiplier: float = 1.0) -> None:
        self.accumulate_phase_statistics(self.bm, multiplier)

    def positive_phase(self) -> None:
        raise NotImplementedError

    def negative_phase(self) -> None:
        raise NotImplementedError

    def train_batch(self, samples: Any) -> Dict[str, float]:
        """
        Train on one batch.

        Args:
            samples: Anything ``bm.set_input`` accepts

        Returns:
            metrics: Dictionary of batch metrics
        """
        bm = self.bm
        bm.set_input(samples)
        n_inputs = bm.n_stripes
        self.positive_phase()
        for source in self.sparsity_sources:
            source.accumulate()
        self.negative_phase()
        for source in self.sparsity_sources:
            source.flush(self.optimizer, n_inputs)
        maybe_update_weights(self.optimizer, n_inputs)
        self.n_inputs += n_inputs
        return {'n_inputs': float(n_inputs)}


class CDTrainer(BMTrainer):
    """
    Contrastive Divergence for RBMs.

    The negative phase runs ``n_gibbs`` rounds of (resample hidden unless
    first round, visible mean [+ sample], hidden mean) starting from the
    positive phase state.
    """

    def __init__(self, bm: RestrictedBoltzmannMachine, n_gibbs: int = 1, **kwargs):
        if not isinstance(bm, RestrictedBoltzmannMachine):
            raise TypeError(f"CD training needs an RBM, got {type(bm).__name__}")
        if n_gibbs < 1:
            raise ValueError(f"n_gibbs must be positive, got {n_gibbs}")
        self.n_gibbs = n_gibbs
        super().__init__(bm, **kwargs)

    def positive_phase(self) -> None:
        bm = self.bm
        bm.set_hidden_mean()
        if self.hidden_sampling:
            bm.sample_hidden()
        self.accumulate_positive_phase_statistics()

    def negative_phase(self) -> None:
        bm = self.bm
        for i in range(self.n_gibbs):
            if i > 0 and self.hidden_sampling:
                bm.sample_hidden()
            bm.set_visible_mean()
            if self.visible_sampling:
                bm.sample_visible()
            bm.set_hidden_mean()
        if self.hidden_sampling is True:
            bm.sample_hidden()
        self.accumulate_negative_phase_statistics()

    def train_batch(self, samples: Any) -> Dict[str, float]:
        metrics = super().train_batch(samples)
        errors = [
            torch.sum((c.inputs - c.means) ** 2).item() / c.inputs.numel()
            for c in self.bm.visible_chunks if c.inputs is not None
        ]
        if errors:
            metrics['reconstruction_error'] = sum(errors) / len(errors)
        return metrics


class PCDTrainer(BMTrainer):
    """
    Persistent Contrastive Divergence.

    The negative phase runs on a persistent copy of the machine with
    ``n_particles`` stripes (fantasy particles) that shares the weights of
    the trained machine and is never reset between batches. Negative
    statistics are scaled by batch_size / n_particles.
    """

    def __init__(self, bm: BoltzmannMachine, n_particles: int = 100, n_gibbs: int = 1, **kwargs):
        if n_particles < 1:
            raise ValueError(f"n_particles must be positive, got {n_particles}")
        if n_gibbs < 1:
            raise ValueError(f"n_gibbs must be positive, got {n_gibbs}")
        self.n_particles = n_particles
        self.n_gibbs = n_gibbs
        self.persistent_chain: Optional[BoltzmannMachine] = None
        super().__init__(bm, **kwargs)

    def positive_phase(self) -> None:
        bm = self.bm
        bm.set_hidden_mean()
        if self.hidden_sampling is True:
            bm.sample_hidden()
        self.accumulate_positive_phase_statistics()

    def _particle_rows(self) -> torch.Tensor:
        return torch.arange(self.n_particles) % max(self.bm.n_stripes, 1)

    def _refresh_from_batch(self, chain: BoltzmannMachine) -> None:
        """Copy conditioning values and per-stripe scales of the batch onto the particles."""
        rows = self._particle_rows()
        for source, target in zip(self.bm.chunks, chain.chunks):
            if type(target) in (ConditioningChunk, TemporalChunk):
                target.clamp(source.nodes[rows])
            scale = getattr(source, 'scale', None)
            if isinstance(scale, torch.Tensor) and scale.numel() > 1:
                # Particles cycle over the batch rows
                target.scale = scale.reshape(-1)[rows % scale.numel()].clone()

    def ensure_chain(self) -> BoltzmannMachine:
        """Create the persistent chain on first use, initialized from the data."""
        for cloud in self.bm.clouds:
            if cloud.is_self_connected:
                raise ValueError(
                    f"PCD does not support self-connected cloud {cloud.name!r}"
                )
        if self.persistent_chain is None:
            chain = self.bm.copy_sharing_weights()
            chain.max_n_stripes = self.n_particles
            chain.n_stripes = self.n_particles
            rows = self._particle_rows()
            for source, target in zip(self.bm.visible_chunks, chain.visible_chunks):
                if not target.is_conditioning:
                    target.clamp(source.inputs[rows] if source.inputs is not None
                                 else source.nodes[rows])
            self._refresh_from_batch(chain)
            chain.set_hidden_mean()
            self.persistent_chain = chain
            logger.info(f"Created persistent chain with {self.n_particles} fantasy particles")
        else:
            self._refresh_from_batch(self.persistent_chain)
        return self.persistent_chain

    def negative_phase(self) -> None:
        chain = self.ensure_chain()
        for _ in range(self.n_gibbs):
            chain.set_mean(chain.visible_chunks)
            if self.visible_sampling:
                chain.sample_visible()
            chain.set_mean(chain.hidden_chunks)
            if self.hidden_sampling:
                chain.sample_hidden()
        self.accumulate_negative_phase_statistics(self.bm.n_stripes / self.n_particles)

    def accumulate_negative_phase_statistics(self, multiplier: float = 1.0) -> None:
        self.accumulate_phase_statistics(self.persistent_chain, multiplier)
