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
Chunks: homogeneous groups of stochastic units

A chunk owns its node buffers and knows how to turn raw activations into
distribution means (``set_chunk_mean``) and how to sample from those means
(``sample_chunk``). Variants:
- SigmoidChunk: Bernoulli units with logistic means
- GaussianChunk: linear means with additive unit-variance noise
- ConditioningChunk / ConstantChunk / TemporalChunk: clamped, never resampled
- NormalizedGroupChunk / ExpNormalizedGroupChunk: grouped normalization,
  with SoftmaxChunk and ConstrainedPoissonChunk as sampling variants

Node buffers are double buffered: ``nodes`` and ``old_nodes`` are two fixed
tensors selected by an active index, so swapping never reallocates.
"""

from typing import Any, Dict, Optional, Type, Union
import logging

import torch

from .utils import (
    ScaleLike,
    normalize_groups,
    sample_bernoulli,
    sample_gaussian,
    sample_poisson,
    sample_softmax_groups,
)

logger = logging.getLogger(__name__)


class Chunk:
    """
    A named group of units sharing one activation and sampling law.

    Buffers are allocated for ``max_n_stripes`` rows (one row per sample in a
    batch); only the first ``n_stripes`` rows are visible through ``nodes``,
    ``old_nodes``, ``means`` and ``inputs``.
    """

    kind = "chunk"
    is_conditioning = False

    def __init__(
        self,
        name: str,
        size: int,
        max_n_stripes: int = 1,
        dtype: torch.dtype = torch.float32,
        device: Optional[torch.device] = None,
    ):
        """
        Initialize chunk.

        Args:
            name: Unique name within the owning machine
            size: Number of units
            max_n_stripes: Initial stripe capacity
            dtype: Data type of the node buffers
            device: Device to place buffers on
        """
        if size <= 0:
            raise ValueError(f"Chunk {name!r} must have a positive size, got {size}")
        self.name = name
        self.size = size
        self.dtype = dtype
        self.device = device or torch.device('cpu')
        self.version: Optional[int] = None
        self._indices_present: Optional[torch.Tensor] = None
        self._n_stripes = 0
        self._max_n_stripes = 0
        self._active = 0
        self._buffers = []
        self._means: Optional[torch.Tensor] = None
        self._inputs: Optional[torch.Tensor] = None
        self.resize(max_n_stripes)
        self.n_stripes = max_n_stripes

    # Buffers

    def _allocate(self) -> torch.Tensor:
        return torch.zeros(self._max_n_stripes, self.size, dtype=self.dtype, device=self.device)

    def resize(self, max_n_stripes: int) -> None:
        """Reallocate buffers for a new stripe capacity, keeping existing rows."""
        if max_n_stripes < 1:
            raise ValueError(f"max_n_stripes must be positive, got {max_n_stripes}")
        if max_n_stripes == self._max_n_stripes:
            return
        old_buffers = self._buffers
        old_means, old_inputs = self._means, self._inputs
        self._max_n_stripes = max_n_stripes
        self._buffers = [self._allocate(), self._allocate()]
        self._means = self._allocate() if self.has_means else None
        self._inputs = self._allocate() if self.has_inputs else None
        keep = min(self._n_stripes, max_n_stripes)
        for new, old in zip(self._buffers, old_buffers):
            new[:keep] = old[:keep]
        if old_means is not None and self._means is not None:
            self._means[:keep] = old_means[:keep]
        if old_inputs is not None and self._inputs is not None:
            self._inputs[:keep] = old_inputs[:keep]
        self._n_stripes = keep
        self._after_resize()

    def _after_resize(self) -> None:
        pass

    @property
    def has_means(self) -> bool:
        return True

    @property
    def has_inputs(self) -> bool:
        return True

    @property
    def max_n_stripes(self) -> int:
        return self._max_n_stripes

    @max_n_stripes.setter
    def max_n_stripes(self, value: int) -> None:
        self.resize(value)

    @property
    def n_stripes(self) -> int:
        return self._n_stripes

    @n_stripes.setter
    def n_stripes(self, value: int) -> None:
        if not 0 <= value <= self._max_n_stripes:
            raise ValueError(
                f"Chunk {self.name!r}: n_stripes {value} exceeds capacity {self._max_n_stripes}"
            )
        assert self._indices_present is None or value <= 1, \
            f"Chunk {self.name!r} has indices_present but n_stripes={value}"
        self._n_stripes = value

    @property
    def indices_present(self) -> Optional[torch.Tensor]:
        return self._indices_present

    @indices_present.setter
    def indices_present(self, indices: Optional[Any]) -> None:
        if indices is not None:
            assert self._n_stripes <= 1, \
                f"Chunk {self.name!r}: indices_present requires a single stripe, has {self._n_stripes}"
            indices = torch.as_tensor(indices, dtype=torch.long, device=self.device)
        self._indices_present = indices

    @property
    def nodes(self) -> torch.Tensor:
        return self._buffers[self._active][:self._n_stripes]

    @property
    def old_nodes(self) -> torch.Tensor:
        return self._buffers[1 - self._active][:self._n_stripes]

    @property
    def means(self) -> Optional[torch.Tensor]:
        if self._means is None:
            return None
        return self._means[:self._n_stripes]

    @property
    def inputs(self) -> Optional[torch.Tensor]:
        if self._inputs is None:
            return None
        return self._inputs[:self._n_stripes]

    def swap_nodes(self) -> None:
        """Exchange ``nodes`` and ``old_nodes`` without copying."""
        self._active = 1 - self._active

    def clamp(self, values: torch.Tensor) -> None:
        """Write ``values`` [n_stripes, size] into the node buffer."""
        self.nodes.copy_(torch.as_tensor(values, dtype=self.dtype, device=self.device)
                         .reshape(self._n_stripes, self.size))

    def snapshot_means(self) -> None:
        if self._means is not None:
            self.means.copy_(self.nodes)

    def snapshot_inputs(self) -> None:
        if self._inputs is not None:
            self.inputs.copy_(self.nodes)

    # Activation law

    def compute_mean(self, activations: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def compute_sample(self, means: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def set_chunk_mean(self) -> None:
        """Overwrite the raw activations in ``nodes`` with means and snapshot them."""
        nodes = self.nodes
        nodes.copy_(self.compute_mean(nodes))
        self.snapshot_means()

    def sample_chunk(self) -> None:
        """Replace the means held in ``nodes`` with a sample."""
        nodes = self.nodes
        nodes.copy_(self.compute_sample(nodes))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, size={self.size}, n_stripes={self.n_stripes})"


class SigmoidChunk(Chunk):
    """Binary units: logistic means, Bernoulli samples."""

    kind = "sigmoid"

    def compute_mean(self, activations: torch.Tensor) -> torch.Tensor:
        return torch.sigmoid(activations)

    def compute_sample(self, means: torch.Tensor) -> torch.Tensor:
        return sample_bernoulli(means)


class GaussianChunk(Chunk):
    """Real-valued units: the mean is the activation, samples add N(0, 1) noise."""

    kind = "gaussian"

    def compute_mean(self, activations: torch.Tensor) -> torch.Tensor:
        return activations

    def compute_sample(self, means: torch.Tensor) -> torch.Tensor:
        return sample_gaussian(means)


class ConditioningChunk(Chunk):
    """
    Externally clamped chunk that is never recomputed or resampled.

    Both node buffers always hold the same values so swapping is harmless.
    """

    kind = "conditioning"
    is_conditioning = True

    @property
    def has_means(self) -> bool:
        return False

    @property
    def has_inputs(self) -> bool:
        return False

    def clamp(self, values: torch.Tensor) -> None:
        super().clamp(values)
        self.old_nodes.copy_(self.nodes)

    def set_chunk_mean(self) -> None:
        pass

    def sample_chunk(self) -> None:
        pass


class ConstantChunk(ConditioningChunk):
    """Conditioning chunk whose nodes are always ``default_value``; used for biases."""

    kind = "constant"

    def __init__(self, name: str, size: int = 1, default_value: float = 1.0, **kwargs):
        self.default_value = default_value
        super().__init__(name, size, **kwargs)

    def _after_resize(self) -> None:
        for buffer in self._buffers:
            buffer.fill_(self.default_value)


class TemporalChunk(ConditioningChunk):
    """
    Conditioning chunk that feeds back the means of ``hidden_source_chunk``.

    After ``remember`` the next ``use_remembered`` copies the remembered
    means into the nodes; before anything was remembered the nodes are zero.
    """

    kind = "temporal"

    def __init__(self, name: str, hidden_source_chunk: Chunk, **kwargs):
        size = kwargs.pop('size', None)
        if size is not None and size != hidden_source_chunk.size:
            raise ValueError(
                f"Temporal chunk {name!r} has size {size} but its source "
                f"{hidden_source_chunk.name!r} has size {hidden_source_chunk.size}"
            )
        kwargs.setdefault('max_n_stripes', hidden_source_chunk.max_n_stripes)
        self.hidden_source_chunk = hidden_source_chunk
        self._remembered: Optional[torch.Tensor] = None
        super().__init__(name, hidden_source_chunk.size, **kwargs)

    def remember(self) -> None:
        source = self.hidden_source_chunk
        values = source.means if source.means is not None else source.nodes
        self._remembered = values.detach().clone()

    def use_remembered(self) -> None:
        if self._remembered is not None and self._remembered.shape[0] == self.n_stripes:
            self.clamp(self._remembered)
        else:
            self.clamp(torch.zeros(self.n_stripes, self.size, dtype=self.dtype))

    def reset(self) -> None:
        self._remembered = None


class NormalizedGroupChunk(Chunk):
    """
    Units normalized in consecutive groups of ``group_size`` so that each
    group sums to ``scale`` (a scalar or one value per stripe).
    """

    kind = "normalized-group"
    exponentiate = False

    def __init__(
        self,
        name: str,
        size: int,
        group_size: Optional[int] = None,
        scale: ScaleLike = 1.0,
        **kwargs
    ):
        group_size = group_size or size
        if size % group_size != 0:
            raise ValueError(
                f"Chunk {name!r}: size {size} is not divisible by group_size {group_size}"
            )
        self.group_size = group_size
        self.scale = scale
        super().__init__(name, size, **kwargs)

    def compute_mean(self, activations: torch.Tensor) -> torch.Tensor:
        return normalize_groups(activations, self.group_size, self.scale,
                                exponentiate=self.exponentiate)

    def compute_sample(self, means: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError(f"{type(self).__name__} cannot be sampled")


class ExpNormalizedGroupChunk(NormalizedGroupChunk):
    """Grouped softmax: exponentiate (max-shifted) activations, then normalize."""

    kind = "exp-normalized-group"
    exponentiate = True


class SoftmaxChunk(ExpNormalizedGroupChunk):
    """One-of-``group_size`` units; samples are one-hot per group."""

    kind = "softmax"

    def compute_sample(self, means: torch.Tensor) -> torch.Tensor:
        return sample_softmax_groups(means, self.group_size)


class ConstrainedPoissonChunk(ExpNormalizedGroupChunk):
    """
    Poisson units whose rates in a group sum to ``scale``.

    With ``scale_from_inputs`` the scale of each stripe is the row sum of the
    clamped inputs (e.g. document length for word counts).
    """

    kind = "constrained-poisson"

    def __init__(self, name: str, size: int, scale_from_inputs: bool = True, **kwargs):
        self.scale_from_inputs = scale_from_inputs
        super().__init__(name, size, **kwargs)

    def snapshot_inputs(self) -> None:
        super().snapshot_inputs()
        if self.scale_from_inputs:
            self.scale = self.inputs.sum(dim=1).clone()

    def compute_sample(self, means: torch.Tensor) -> torch.Tensor:
        return sample_poisson(means)


CHUNK_KINDS: Dict[str, Type[Chunk]] = {
    cls.kind: cls
    for cls in (
        SigmoidChunk,
        GaussianChunk,
        ConditioningChunk,
        ConstantChunk,
        TemporalChunk,
        NormalizedGroupChunk,
        ExpNormalizedGroupChunk,
        SoftmaxChunk,
        ConstrainedPoissonChunk,
    )
}


def make_chunk(kind: Union[str, Type[Chunk]], name: str, size: Optional[int] = None, **kwargs) -> Chunk:
    """
    Create a chunk from its kind name.

    Args:
        kind: One of ``CHUNK_KINDS`` or a Chunk subclass
        name: Chunk name
        size: Number of units (optional for constant and temporal chunks)
        **kwargs: Variant specific arguments

    Returns:
        The new chunk
    """
    if isinstance(kind, str):
        try:
            cls = CHUNK_KINDS[kind]
        except KeyError:
            raise ValueError(f"Unknown chunk kind: {kind}") from None
    else:
        cls = kind
    if size is not None:
        kwargs['size'] = size
    return cls(name, **kwargs)
