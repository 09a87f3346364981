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
Restricted Boltzmann Machine

An RBM is a Boltzmann machine without visible-to-visible or
hidden-to-hidden clouds, so a single pass computes exact conditional means
and Contrastive Divergence applies. ``make_rbm`` builds the common
sigmoid/gaussian configuration with bias chunks.
"""

from typing import Any, Literal, Optional, Sequence
import logging

import torch

from .bm import BoltzmannMachine
from .chunk import Chunk, ConstantChunk, make_chunk

logger = logging.getLogger(__name__)


class RestrictedBoltzmannMachine(BoltzmannMachine):
    """Boltzmann machine with no intralayer clouds (checked at construction)."""

    def __init__(
        self,
        visible_chunks: Sequence[Chunk],
        hidden_chunks: Sequence[Chunk],
        clouds: Optional[Sequence[Any]] = None,
        max_n_stripes: int = 1,
        **kwargs
    ):
        super().__init__(visible_chunks, hidden_chunks, clouds=clouds,
                         max_n_stripes=max_n_stripes, **kwargs)
        visible_ids = {id(c) for c in self.visible_chunks}
        for cloud in self.clouds:
            same_side = (id(cloud.chunk1) in visible_ids) == (id(cloud.chunk2) in visible_ids)
            if same_side and not (cloud.chunk1.is_conditioning or cloud.chunk2.is_conditioning):
                raise ValueError(f"RBM cannot have intralayer cloud {cloud.name!r}")
        assert not self.has_visible_to_visible and not self.has_hidden_to_hidden

    @property
    def visible_chunk(self) -> Chunk:
        """The first non-conditioning visible chunk."""
        return next(c for c in self.visible_chunks if not c.is_conditioning)

    @property
    def hidden_chunk(self) -> Chunk:
        """The first non-conditioning hidden chunk."""
        return next(c for c in self.hidden_chunks if not c.is_conditioning)


def make_rbm(
    n_visible: int,
    n_hidden: int,
    visible_type: Literal["sigmoid", "gaussian", "softmax", "constrained-poisson"] = "sigmoid",
    hidden_type: Literal["sigmoid", "gaussian"] = "sigmoid",
    use_bias: bool = True,
    max_n_stripes: int = 1,
    dtype: torch.dtype = torch.float32,
    **visible_kwargs
) -> RestrictedBoltzmannMachine:
    """
    Build a two-chunk RBM named ``inputs``/``features``.

    With ``use_bias`` a constant chunk is added on each side
    (``visible-bias`` and ``hidden-bias``); the default clouds then give
    the hidden and visible biases.

    Args:
        n_visible: Number of visible units
        n_hidden: Number of hidden units
        visible_type: Chunk kind of the visible units
        hidden_type: Chunk kind of the hidden units
        use_bias: Whether to add bias chunks
        max_n_stripes: Initial stripe capacity
        dtype: Data type for tensors
        **visible_kwargs: Extra arguments for the visible chunk (e.g. group_size)

    Returns:
        The RBM
    """
    visible = [make_chunk(visible_type, "inputs", n_visible, dtype=dtype, **visible_kwargs)]
    hidden = [make_chunk(hidden_type, "features", n_hidden, dtype=dtype)]
    if use_bias:
        visible.insert(0, ConstantChunk("visible-bias", dtype=dtype))
        hidden.insert(0, ConstantChunk("hidden-bias", dtype=dtype))
    return RestrictedBoltzmannMachine(visible, hidden, max_n_stripes=max_n_stripes)
