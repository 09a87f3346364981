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
Clouds: weighted bipartite connections between two chunks

This module implements:
- CloudSpec and spec merging (default clouds, overrides, removal)
- FullCloud: dense weight matrix with per-direction activation caches
- FactoredCloud: low-rank connection routed through a shared chunk
- Sufficient statistics for gradient accumulation and raw weight I/O
"""

from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Type, Union
import logging

import numpy as np
import torch
import torch.nn as nn

from .chunk import Chunk, ConstantChunk

logger = logging.getLogger(__name__)

NodeFn = Callable[[Chunk], torch.Tensor]

MERGE = "merge"


def _nodes(chunk: Chunk) -> torch.Tensor:
    return chunk.nodes


def _old_nodes(chunk: Chunk) -> torch.Tensor:
    return chunk.old_nodes


def _present_only(chunk: Chunk, values: torch.Tensor) -> torch.Tensor:
    """Zero the columns of ``values`` that are missing from a sparse chunk."""
    if chunk.indices_present is None:
        return values
    masked = torch.zeros_like(values)
    masked[:, chunk.indices_present] = values[:, chunk.indices_present]
    return masked


@dataclass
class CloudSpec:
    """
    Declarative description of a cloud.

    ``kind`` is ``"full"``, ``"factored"`` or ``None``; a ``None`` kind
    removes any default cloud between the same pair of chunks when merged.
    """

    chunk1: str
    chunk2: str
    kind: Optional[str] = "full"
    name: Optional[str] = None
    rank: Optional[int] = None
    scale1: float = 1.0
    scale2: float = 1.0
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> FrozenSet[str]:
        return frozenset((self.chunk1, self.chunk2))

    @classmethod
    def coerce(cls, spec: Union["CloudSpec", Dict[str, Any]]) -> "CloudSpec":
        if isinstance(spec, CloudSpec):
            return spec
        spec = dict(spec)
        known = {k: spec.pop(k) for k in list(spec) if k in cls.__dataclass_fields__}
        return cls(**known, options=spec)


def default_cloud_specs(pairs: Iterable[Tuple[Chunk, Chunk]]) -> List[CloudSpec]:
    """Full cloud specs for ``pairs`` except conditioning-conditioning ones."""
    return [
        CloudSpec(chunk1.name, chunk2.name)
        for chunk1, chunk2 in pairs
        if not (chunk1.is_conditioning and chunk2.is_conditioning)
    ]


def merge_cloud_specs(
    specs: Optional[Sequence[Any]],
    default_specs: Sequence[CloudSpec],
) -> List[Any]:
    """
    Resolve a cloud list against the default clouds.

    Without the ``"merge"`` marker only the explicit entries are kept. With
    it the defaults are included, an explicit spec replaces the default for
    the same unordered chunk pair, and a spec with ``kind=None`` removes it.
    Already constructed clouds are passed through untouched.

    Args:
        specs: Explicit entries (CloudSpec, dict, cloud or ``"merge"``);
            ``None`` means ``["merge"]``
        default_specs: Default specs used when merging

    Returns:
        The resolved list of CloudSpecs and cloud objects
    """
    if specs is None:
        specs = [MERGE]
    explicit = [s if isinstance(s, (str, nn.Module)) else CloudSpec.coerce(s) for s in specs]
    merged: Dict[FrozenSet[str], Optional[CloudSpec]] = {}
    if MERGE in explicit:
        for spec in default_specs:
            merged[spec.key] = spec
    result: List[Any] = []
    for entry in explicit:
        if entry == MERGE:
            continue
        if isinstance(entry, nn.Module):
            result.append(entry)
        elif entry.key in merged:
            merged[entry.key] = entry if entry.kind is not None else None
        elif entry.kind is not None:
            result.append(entry)
    return [spec for spec in merged.values() if spec is not None] + result


class FullCloud(nn.Module):
    """
    Dense connection: ``weights`` has shape [chunk1.size, chunk2.size].

    Activating chunk2 computes ``chunk1 @ W``; activating chunk1 (reverse)
    computes ``chunk2 @ W.T``. The contribution is multiplied by the scale of
    the destination side (``scale2`` or ``scale1``) and added to the target.
    Contributions are cached per direction keyed on the source chunk's
    version stamp; a source without a version is never cached.
    """

    kind = "full"

    def __init__(
        self,
        chunk1: Chunk,
        chunk2: Chunk,
        name: Optional[str] = None,
        scale1: float = 1.0,
        scale2: float = 1.0,
        weights: Optional[torch.Tensor] = None,
    ):
        """
        Initialize full cloud.

        Args:
            chunk1: First chunk
            chunk2: Second chunk (may be chunk1 for a self-connection)
            name: Cloud name, defaults to "<chunk1>-<chunk2>"
            scale1: Multiplier for contributions into chunk1
            scale2: Multiplier for contributions into chunk2
            weights: Initial weights, or an existing Parameter to share
        """
        super().__init__()
        self.chunk1 = chunk1
        self.chunk2 = chunk2
        self.name = name or f"{chunk1.name}-{chunk2.name}"
        self.scale1 = scale1
        self.scale2 = scale2
        if isinstance(weights, nn.Parameter):
            self.weights = weights
        else:
            if weights is None and (isinstance(chunk1, ConstantChunk) or isinstance(chunk2, ConstantChunk)):
                weights = torch.zeros(chunk1.size, chunk2.size, dtype=chunk1.dtype)
            elif weights is None:
                # Xavier initialization
                std = np.sqrt(2.0 / (chunk1.size + chunk2.size))
                weights = torch.randn(chunk1.size, chunk2.size, dtype=chunk1.dtype) * std
            self.weights = nn.Parameter(
                torch.as_tensor(weights, dtype=chunk1.dtype, device=chunk1.device)
                .reshape(chunk1.size, chunk2.size).clone(),
                requires_grad=False,
            )
        self.zero_weight_to_self()
        self.cached_version1: Optional[int] = None
        self.cached_version2: Optional[int] = None
        self.cached_activations1: Optional[torch.Tensor] = None
        self.cached_activations2: Optional[torch.Tensor] = None

    @property
    def is_self_connected(self) -> bool:
        return self.chunk1 is self.chunk2

    def zero_weight_to_self(self) -> None:
        """Keep the diagonal of a self-connection at zero."""
        if self.is_self_connected:
            self.weights.data.fill_diagonal_(0.0)

    def invalidate_cache(self) -> None:
        self.cached_version1 = self.cached_version2 = None
        self.cached_activations1 = self.cached_activations2 = None

    def _contribution(self, reverse: bool, source: torch.Tensor, from_chunk: Chunk) -> torch.Tensor:
        weights = self.weights
        present = from_chunk.indices_present
        if present is not None:
            # Dense kernels cannot skip missing rows.
            if reverse:
                contribution = source[:, present] @ weights[:, present].t()
            else:
                contribution = source[:, present] @ weights[present, :]
        else:
            contribution = source @ (weights.t() if reverse else weights)
        scale = self.scale1 if reverse else self.scale2
        if scale != 1:
            contribution = contribution * scale
        return contribution

    def activate(self, reverse: bool = False, from_fn: NodeFn = _nodes, to_fn: NodeFn = _nodes) -> None:
        """
        Add this cloud's contribution to the target chunk.

        Args:
            reverse: If True propagate chunk2 -> chunk1, else chunk1 -> chunk2
            from_fn: Selects the source buffer of a chunk
            to_fn: Selects the target buffer of a chunk
        """
        from_chunk, to_chunk = (self.chunk2, self.chunk1) if reverse else (self.chunk1, self.chunk2)
        target = to_fn(to_chunk)
        version = from_chunk.version
        if reverse:
            cached_version, cached = self.cached_version1, self.cached_activations1
        else:
            cached_version, cached = self.cached_version2, self.cached_activations2
        if version is not None and version == cached_version and cached is not None \
                and cached.shape == target.shape:
            target.add_(cached)
            return
        self.zero_weight_to_self()
        contribution = self._contribution(reverse, from_fn(from_chunk), from_chunk)
        target.add_(contribution)
        if version is not None:
            if reverse:
                self.cached_version1, self.cached_activations1 = version, contribution
            else:
                self.cached_version2, self.cached_activations2 = version, contribution

    def statistics(
        self, values1: torch.Tensor, values2: torch.Tensor
    ) -> List[Tuple[nn.Parameter, torch.Tensor]]:
        """Return (segment, v1.T @ v2) for gradient accumulation."""
        values1 = _present_only(self.chunk1, values1)
        values2 = _present_only(self.chunk2, values2)
        return [(self.weights, values1.t() @ values2)]

    def segments(self) -> List[nn.Parameter]:
        return [self.weights]

    def n_weights(self) -> int:
        return self.weights.numel()

    def write_weights(self, stream: BinaryIO, dtype: np.dtype = np.dtype('<f8')) -> None:
        stream.write(self.weights.detach().cpu().numpy().astype(dtype).tobytes())

    def read_weights(self, stream: BinaryIO, dtype: np.dtype = np.dtype('<f8')) -> None:
        dtype = np.dtype(dtype)
        n_bytes = self.weights.numel() * dtype.itemsize
        data = stream.read(n_bytes)
        if len(data) < n_bytes:
            raise EOFError(f"Cloud {self.name!r}: expected {n_bytes} bytes, got {len(data)}")
        values = np.frombuffer(data, dtype=dtype).reshape(tuple(self.weights.shape))
        # torch only accepts native byte order
        values = values.astype(dtype.newbyteorder('='))
        self.weights.data.copy_(torch.from_numpy(values))
        self.invalidate_cache()

    def rebind(
        self, chunk1: Chunk, chunk2: Chunk, scale1: float = 1.0, scale2: float = 1.0
    ) -> "FullCloud":
        """A new cloud between other chunks that shares these weights."""
        return FullCloud(chunk1, chunk2, name=self.name, scale1=scale1, scale2=scale2,
                         weights=self.weights)

    def extra_repr(self) -> str:
        return f"name={self.name!r}, chunk1={self.chunk1.name!r}, chunk2={self.chunk2.name!r}"


class FactoredCloud(nn.Module):
    """
    Low-rank connection ``W ~ A @ B`` through a shared chunk of size ``rank``.

    ``cloud_a`` connects chunk1 to the shared chunk and ``cloud_b`` the shared
    chunk to chunk2; each owns its slice of the weights.
    """

    kind = "factored"

    def __init__(
        self,
        chunk1: Chunk,
        chunk2: Chunk,
        rank: int,
        name: Optional[str] = None,
        scale1: float = 1.0,
        scale2: float = 1.0,
        cloud_a: Optional[FullCloud] = None,
        cloud_b: Optional[FullCloud] = None,
    ):
        super().__init__()
        if chunk1 is chunk2:
            raise ValueError(f"Factored cloud {name!r} cannot connect chunk {chunk1.name!r} to itself")
        if not rank or rank < 1:
            raise ValueError(f"Factored cloud {name!r} needs a positive rank, got {rank}")
        self.chunk1 = chunk1
        self.chunk2 = chunk2
        self.rank = rank
        self.name = name or f"{chunk1.name}-{chunk2.name}"
        self.shared_chunk = Chunk(f"{self.name}-shared", rank, max_n_stripes=chunk1.max_n_stripes,
                                  dtype=chunk1.dtype, device=chunk1.device)
        self.cloud_a = FullCloud(chunk1, self.shared_chunk, name=f"{self.name}-a", scale1=scale1,
                                 weights=None if cloud_a is None else cloud_a.weights)
        self.cloud_b = FullCloud(self.shared_chunk, chunk2, name=f"{self.name}-b", scale2=scale2,
                                 weights=None if cloud_b is None else cloud_b.weights)

    @property
    def is_self_connected(self) -> bool:
        return False

    @property
    def scale1(self) -> float:
        return self.cloud_a.scale1

    @property
    def scale2(self) -> float:
        return self.cloud_b.scale2

    def zero_weight_to_self(self) -> None:
        if self.chunk1 is self.chunk2:
            raise NotImplementedError("Factored clouds do not support self-connections")

    def invalidate_cache(self) -> None:
        self.cloud_a.invalidate_cache()
        self.cloud_b.invalidate_cache()

    def _check_sparsity(self) -> None:
        if self.chunk1.indices_present is not None:
            raise ValueError(
                f"Factored cloud {self.name!r} does not support sparse chunk {self.chunk1.name!r}"
            )

    def _prepare_shared(self, n_stripes: int) -> None:
        shared = self.shared_chunk
        if shared.max_n_stripes < n_stripes:
            shared.resize(n_stripes)
        shared.n_stripes = n_stripes
        shared.nodes.zero_()

    def activate(self, reverse: bool = False, from_fn: NodeFn = _nodes, to_fn: NodeFn = _nodes) -> None:
        self._check_sparsity()
        from_chunk = self.chunk2 if reverse else self.chunk1
        self._prepare_shared(from_chunk.n_stripes)
        if reverse:
            self.cloud_b.activate(True, from_fn=from_fn, to_fn=_nodes)
            self.cloud_a.activate(True, from_fn=_nodes, to_fn=to_fn)
        else:
            self.cloud_a.activate(False, from_fn=from_fn, to_fn=_nodes)
            self.cloud_b.activate(False, from_fn=_nodes, to_fn=to_fn)

    def statistics(
        self, values1: torch.Tensor, values2: torch.Tensor
    ) -> List[Tuple[nn.Parameter, torch.Tensor]]:
        """Gradients of v1 A B v2 with respect to A and B."""
        self._check_sparsity()
        values2 = _present_only(self.chunk2, values2)
        a, b = self.cloud_a.weights, self.cloud_b.weights
        return [
            (a, values1.t() @ (values2 @ b.t())),
            (b, (values1 @ a).t() @ values2),
        ]

    def segments(self) -> List[nn.Parameter]:
        return [self.cloud_a.weights, self.cloud_b.weights]

    def n_weights(self) -> int:
        return self.cloud_a.n_weights() + self.cloud_b.n_weights()

    def dense_weights(self) -> torch.Tensor:
        return self.cloud_a.weights @ self.cloud_b.weights

    def write_weights(self, stream: BinaryIO, dtype: np.dtype = np.dtype('<f8')) -> None:
        self.cloud_a.write_weights(stream, dtype)
        self.cloud_b.write_weights(stream, dtype)

    def read_weights(self, stream: BinaryIO, dtype: np.dtype = np.dtype('<f8')) -> None:
        self.cloud_a.read_weights(stream, dtype)
        self.cloud_b.read_weights(stream, dtype)

    def rebind(
        self, chunk1: Chunk, chunk2: Chunk, scale1: float = 1.0, scale2: float = 1.0
    ) -> "FactoredCloud":
        return FactoredCloud(chunk1, chunk2, self.rank, name=self.name, scale1=scale1,
                             scale2=scale2, cloud_a=self.cloud_a, cloud_b=self.cloud_b)

    def extra_repr(self) -> str:
        return (f"name={self.name!r}, chunk1={self.chunk1.name!r}, "
                f"chunk2={self.chunk2.name!r}, rank={self.rank}")


Cloud = Union[FullCloud, FactoredCloud]

CLOUD_KINDS: Dict[str, Type[nn.Module]] = {
    FullCloud.kind: FullCloud,
    FactoredCloud.kind: FactoredCloud,
}


def make_cloud(spec: Union[CloudSpec, Dict[str, Any]], chunks: Dict[str, Chunk]) -> Cloud:
    """
    Construct a cloud from a spec, resolving chunk names.

    Raises:
        KeyError: If a chunk name is unknown
        ValueError: If the kind is unknown
    """
    spec = CloudSpec.coerce(spec)
    try:
        chunk1, chunk2 = chunks[spec.chunk1], chunks[spec.chunk2]
    except KeyError as e:
        raise KeyError(f"Cloud spec refers to unknown chunk {e.args[0]!r}") from None
    if spec.kind == FullCloud.kind:
        return FullCloud(chunk1, chunk2, name=spec.name, scale1=spec.scale1,
                         scale2=spec.scale2, **spec.options)
    if spec.kind == FactoredCloud.kind:
        return FactoredCloud(chunk1, chunk2, spec.rank, name=spec.name, scale1=spec.scale1,
                             scale2=spec.scale2, **spec.options)
    raise ValueError(f"Unknown cloud kind: {spec.kind}")
