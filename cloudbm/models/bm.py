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
Boltzmann machines built from chunks and clouds

This module implements the general (possibly fully connected) Boltzmann
machine:
- Chunk bookkeeping (visible, hidden and conditioning sets)
- Cloud resolution from specs with default clouds
- Synchronous mean computation (``set_mean``) and mean-field settling
- Version scopes that bound activation cache validity
- Input clamping, temporal memory and raw weight persistence
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterable, Iterator, List, Optional, Sequence, Union
import copy
import logging

import numpy as np
import torch
import torch.nn as nn

from .chunk import Chunk, ConditioningChunk, TemporalChunk
from .cloud import (
    MERGE,
    Cloud,
    CloudSpec,
    FactoredCloud,
    NodeFn,
    _nodes,
    _old_nodes,
    default_cloud_specs,
    make_cloud,
    merge_cloud_specs,
)
from .utils import VersionCounter

logger = logging.getLogger(__name__)

Supervisor = Callable[[List[Chunk], "BoltzmannMachine", int], Optional[float]]


def node_change(chunks: Sequence[Chunk]) -> float:
    """Average absolute difference between ``nodes`` and ``old_nodes``."""
    total, count = 0.0, 0
    for chunk in chunks:
        total += torch.sum(torch.abs(chunk.nodes - chunk.old_nodes)).item()
        count += chunk.nodes.numel()
    return total / count if count else 0.0


class MeanFieldSupervisor:
    """
    Default mean-field supervisor.

    Stops as soon as the average absolute change per node drops below
    ``tolerance``. Otherwise returns no damping for ``n_undamped``
    iterations, then ``damping`` for ``n_damped`` iterations, then stops.
    """

    def __init__(
        self,
        tolerance: float = 1e-7,
        n_undamped: int = 100,
        n_damped: int = 100,
        damping: float = 0.9,
    ):
        self.tolerance = tolerance
        self.n_undamped = n_undamped
        self.n_damped = n_damped
        self.damping = damping

    def __call__(self, chunks: List[Chunk], bm: "BoltzmannMachine", iteration: int) -> Optional[float]:
        if node_change(chunks) < self.tolerance:
            return None
        if iteration < self.n_undamped:
            return 0.0
        if iteration < self.n_undamped + self.n_damped:
            return self.damping
        logger.debug(f"Mean field did not converge in {iteration + 1} iterations")
        return None


default_mean_field_supervisor = MeanFieldSupervisor()


def hijack_means_to_activation(
    chunks: Sequence[Chunk],
    clouds: Iterable[Cloud],
    from_fn: NodeFn = _nodes,
) -> None:
    """
    Gather the total activation of ``chunks`` from every incident cloud.

    Non-conditioning target chunks are zeroed first, then each cloud adds the
    contribution of its other chunk (read through ``from_fn``). A
    self-connected cloud contributes once.
    """
    targets = [chunk for chunk in chunks if not chunk.is_conditioning]
    target_ids = {id(chunk) for chunk in targets}
    for chunk in targets:
        chunk.nodes.zero_()
    for cloud in clouds:
        if id(cloud.chunk1) in target_ids:
            cloud.activate(reverse=True, from_fn=from_fn, to_fn=_nodes)
        if id(cloud.chunk2) in target_ids and cloud.chunk1 is not cloud.chunk2:
            cloud.activate(reverse=False, from_fn=from_fn, to_fn=_nodes)


def resolve_clouds(
    specs: Optional[Sequence[Any]],
    default_specs: Sequence[CloudSpec],
    chunks: Sequence[Chunk],
) -> List[Cloud]:
    """Merge ``specs`` with ``default_specs`` and construct the clouds."""
    by_name = {chunk.name: chunk for chunk in chunks}
    return [
        entry if isinstance(entry, nn.Module) else make_cloud(entry, by_name)
        for entry in merge_cloud_specs(specs, default_specs)
    ]


def _check_unique_names(things: Iterable[Any], what: str) -> None:
    seen = set()
    for thing in things:
        if thing.name in seen:
            raise ValueError(f"Duplicate {what} name: {thing.name!r}")
        seen.add(thing.name)


class BoltzmannMachine(nn.Module):
    """
    Undirected graphical model of chunks connected by clouds.

    Every chunk shares the stripe capacity ``max_n_stripes``. Weights are
    non-trainable torch Parameters owned by the clouds; learning happens
    through the trainers in ``cloudbm.training``.
    """

    def __init__(
        self,
        visible_chunks: Sequence[Chunk],
        hidden_chunks: Sequence[Chunk],
        clouds: Optional[Sequence[Any]] = None,
        max_n_stripes: int = 1,
        mean_field_supervisor: Optional[Supervisor] = None,
    ):
        """
        Initialize Boltzmann machine.

        Args:
            visible_chunks: Chunks clamped to data
            hidden_chunks: Latent chunks
            clouds: CloudSpecs, spec dicts, clouds or ``"merge"`` (None means
                the default clouds between every visible and hidden chunk)
            max_n_stripes: Stripe capacity of every chunk
            mean_field_supervisor: Controls mean-field settling
        """
        super().__init__()
        self.visible_chunks: List[Chunk] = list(visible_chunks)
        self.hidden_chunks: List[Chunk] = list(hidden_chunks)
        self.chunks: List[Chunk] = self.visible_chunks + self.hidden_chunks
        _check_unique_names(self.chunks, "chunk")
        if len({id(c) for c in self.chunks}) != len(self.chunks):
            raise ValueError("Visible and hidden chunks must be disjoint")

        merging = clouds is None or MERGE in clouds
        self.clouds = nn.ModuleList(
            resolve_clouds(clouds, self.default_cloud_specs() if merging else [], self.chunks)
        )
        _check_unique_names(self.clouds, "cloud")
        chunk_ids = {id(c) for c in self.chunks}
        for cloud in self.clouds:
            if id(cloud.chunk1) not in chunk_ids or id(cloud.chunk2) not in chunk_ids:
                raise ValueError(f"Cloud {cloud.name!r} connects chunks outside the machine")

        self.mean_field_supervisor = mean_field_supervisor or default_mean_field_supervisor
        self._versions = VersionCounter()
        self._max_n_stripes = 0
        self.max_n_stripes = max_n_stripes
        self._derive_chunk_sets()

        logger.debug(
            f"{type(self).__name__} created: visible={[c.name for c in self.visible_chunks]}, "
            f"hidden={[c.name for c in self.hidden_chunks]}, clouds={[c.name for c in self.clouds]}"
        )

    def default_cloud_specs(self) -> List[CloudSpec]:
        return default_cloud_specs(
            (visible, hidden) for visible in self.visible_chunks for hidden in self.hidden_chunks
        )

    def _derive_chunk_sets(self) -> None:
        visible_ids = {id(c) for c in self.visible_chunks}
        hidden_ids = {id(c) for c in self.hidden_chunks}
        self.conditioning_chunks = [c for c in self.chunks if c.is_conditioning]
        self.visible_and_conditioning_chunks = self.visible_chunks + [
            c for c in self.conditioning_chunks if id(c) not in visible_ids
        ]
        self.hidden_and_conditioning_chunks = self.hidden_chunks + [
            c for c in self.conditioning_chunks if id(c) not in hidden_ids
        ]

        def connects(cloud: Cloud, ids) -> bool:
            return (id(cloud.chunk1) in ids and id(cloud.chunk2) in ids
                    and not cloud.chunk1.is_conditioning and not cloud.chunk2.is_conditioning)

        self.has_visible_to_visible = any(connects(c, visible_ids) for c in self.clouds)
        self.has_hidden_to_hidden = any(connects(c, hidden_ids) for c in self.clouds)

    # Stripes

    @property
    def max_n_stripes(self) -> int:
        return self._max_n_stripes

    @max_n_stripes.setter
    def max_n_stripes(self, value: int) -> None:
        for chunk in self.chunks:
            chunk.resize(value)
        for cloud in self.clouds:
            if isinstance(cloud, FactoredCloud):
                cloud.shared_chunk.resize(value)
        self._max_n_stripes = value

    @property
    def n_stripes(self) -> int:
        return self.chunks[0].n_stripes if self.chunks else 0

    @n_stripes.setter
    def n_stripes(self, value: int) -> None:
        for chunk in self.chunks:
            chunk.n_stripes = value

    # Lookup

    def find_chunk(self, name: str, errorp: bool = True) -> Optional[Chunk]:
        for chunk in self.chunks:
            if chunk.name == name:
                return chunk
        if errorp:
            raise KeyError(f"Unknown chunk: {name!r}")
        return None

    def find_cloud(self, name: str, errorp: bool = True) -> Optional[Cloud]:
        for cloud in self.clouds:
            if cloud.name == name:
                return cloud
        if errorp:
            raise KeyError(f"Unknown cloud: {name!r}")
        return None

    def n_weights(self) -> int:
        return sum(cloud.n_weights() for cloud in self.clouds)

    # Versions

    @contextmanager
    def with_versions(self, chunks: Iterable[Chunk]) -> Iterator[None]:
        """
        Give ``chunks`` fresh version stamps for the duration of the block.

        Clouds may reuse a cached contribution only while the source chunk's
        stamp is unchanged, so the chunks must not change inside the block.
        """
        chunks = list(chunks)
        saved = [chunk.version for chunk in chunks]
        for chunk in chunks:
            chunk.version = self._versions.next()
        try:
            yield
        finally:
            for chunk, version in zip(chunks, saved):
                chunk.version = version

    # Input

    def input_chunks(self) -> List[Chunk]:
        """Chunks populated by ``set_input``, in order."""
        return [
            c for c in self.chunks
            if (c in self.visible_chunks and not c.is_conditioning) or type(c) is ConditioningChunk
        ]

    def clamp_samples(self, samples: Any) -> None:
        """
        Populate input chunk nodes from ``samples``.

        Accepts a mapping of chunk name to [n_stripes, size] values, or a
        [n_stripes, total_size] tensor split across ``input_chunks`` in
        order. Subclasses override this for domain specific encodings.
        """
        if isinstance(samples, dict):
            for name, values in samples.items():
                self.find_chunk(name).clamp(values)
            return
        values = torch.as_tensor(np.asarray(samples) if not isinstance(samples, torch.Tensor) else samples)
        values = values.reshape(self.n_stripes, -1)
        start = 0
        for chunk in self.input_chunks():
            chunk.clamp(values[:, start:start + chunk.size])
            start += chunk.size
        if start != values.shape[1]:
            raise ValueError(f"Samples have {values.shape[1]} columns, input chunks need {start}")

    def set_input(self, samples: Any) -> None:
        """
        Clamp a batch of samples onto the visible chunks.

        Afterwards the visible nodes are copied to ``inputs`` and ``means``
        and temporal chunks pick up their remembered values.
        """
        n_stripes = len(next(iter(samples.values()))) if isinstance(samples, dict) else len(samples)
        if n_stripes > self.max_n_stripes:
            self.max_n_stripes = n_stripes
        self.n_stripes = n_stripes
        self.clamp_samples(samples)
        for chunk in self.chunks:
            if isinstance(chunk, TemporalChunk):
                chunk.use_remembered()
        for chunk in self.visible_chunks:
            chunk.snapshot_inputs()
            chunk.snapshot_means()

    def remember(self) -> None:
        for chunk in self.chunks:
            if isinstance(chunk, TemporalChunk):
                chunk.remember()

    def reset_temporal(self) -> None:
        for chunk in self.chunks:
            if isinstance(chunk, TemporalChunk):
                chunk.reset()

    # Means and samples

    def set_mean(self, chunks: Sequence[Chunk]) -> None:
        """
        Recompute the means of ``chunks`` in parallel.

        Every chunk is swapped so that activations are gathered from the
        values before the call (now in ``old_nodes``) while the targets'
        ``nodes`` receive the new means; the non-targets are swapped back.
        """
        targets = [chunk for chunk in chunks if not chunk.is_conditioning]
        target_ids = {id(chunk) for chunk in targets}
        for chunk in self.chunks:
            chunk.swap_nodes()
        hijack_means_to_activation(targets, self.clouds, from_fn=_old_nodes)
        for chunk in targets:
            chunk.set_chunk_mean()
        for chunk in self.chunks:
            if id(chunk) not in target_ids:
                chunk.swap_nodes()

    def settle_mean_field(self, chunks: Sequence[Chunk], supervisor: Optional[Supervisor] = None) -> int:
        """
        Iterate mean-field updates of ``chunks`` until the supervisor stops.

        The supervisor returns a damping factor k (new = k * old + (1 - k) *
        computed) or None to stop.

        Returns:
            Number of iterations performed
        """
        chunks = [chunk for chunk in chunks if not chunk.is_conditioning]
        supervisor = supervisor or self.mean_field_supervisor
        iteration = 0
        while True:
            for chunk in chunks:
                self.set_mean([chunk])
            damping = supervisor(chunks, self, iteration)
            iteration += 1
            if damping is None:
                return iteration
            if damping:
                for chunk in chunks:
                    chunk.nodes.mul_(1.0 - damping).add_(chunk.old_nodes, alpha=damping)
                    chunk.snapshot_means()

    def set_visible_mean(self) -> None:
        with self.with_versions(self.hidden_and_conditioning_chunks):
            self.set_mean(self.visible_chunks)
            if self.has_visible_to_visible:
                self.settle_mean_field(self.visible_chunks)

    def initialize_hidden_mean(self) -> None:
        """Single pass hidden mean computation preceding mean-field settling."""
        self.set_mean(self.hidden_chunks)

    def set_hidden_mean(self) -> None:
        with self.with_versions(self.visible_and_conditioning_chunks):
            self.initialize_hidden_mean()
            if self.has_hidden_to_hidden:
                self.settle_mean_field(self.hidden_chunks)

    def sample_visible(self) -> None:
        for chunk in self.visible_chunks:
            chunk.sample_chunk()

    def sample_hidden(self) -> None:
        for chunk in self.hidden_chunks:
            chunk.sample_chunk()

    def mean_field_reconstruct(self) -> None:
        """Hidden means from the clamped inputs, then visible means."""
        self.set_hidden_mean()
        self.set_visible_mean()

    def sample_reconstruct(self) -> None:
        """Hidden means and samples from the clamped inputs, then visible means."""
        self.set_hidden_mean()
        self.sample_hidden()
        self.set_visible_mean()

    # Copies

    def copy_sharing_weights(self) -> "BoltzmannMachine":
        """Deep copy of the machine whose clouds share this machine's weights."""
        memo = {id(p): p for p in self.parameters()}
        return copy.deepcopy(self, memo)

    # Persistence

    def write_weights(self, stream: BinaryIO, dtype: Union[str, np.dtype] = '<f8') -> None:
        """Write the raw weights of every cloud, in cloud order, without a header."""
        for cloud in self.clouds:
            cloud.write_weights(stream, np.dtype(dtype))

    def read_weights(self, stream: BinaryIO, dtype: Union[str, np.dtype] = '<f8') -> None:
        for cloud in self.clouds:
            cloud.read_weights(stream, np.dtype(dtype))

    def save_weights(self, filepath: Union[str, Path], dtype: Union[str, np.dtype] = '<f8') -> None:
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'wb') as f:
            self.write_weights(f, dtype)
        logger.info(f"Weights saved to {filepath}")

    def load_weights(self, filepath: Union[str, Path], dtype: Union[str, np.dtype] = '<f8') -> None:
        with open(filepath, 'rb') as f:
            self.read_weights(f, dtype)
        logger.info(f"Weights loaded from {filepath}")

    def extra_repr(self) -> str:
        return (f"visible={[c.name for c in self.visible_chunks]}, "
                f"hidden={[c.name for c in self.hidden_chunks]}, "
                f"max_n_stripes={self.max_n_stripes}")
