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
Sampling primitives and small helpers shared by chunks and clouds

This module provides:
- Bernoulli, Gaussian, grouped softmax and Poisson samplers
- Numerically stable grouped (exp-)normalization
- A monotonic version counter used for activation caching
"""

from typing import Optional, Union
import logging

import torch

logger = logging.getLogger(__name__)

ScaleLike = Union[float, torch.Tensor]


def sample_bernoulli(probs: torch.Tensor) -> torch.Tensor:
    """
    Sample from Bernoulli distribution.

    Args:
        probs: Bernoulli probabilities [n_stripes, n_units]

    Returns:
        samples: Binary samples [n_stripes, n_units]
    """
    return torch.bernoulli(probs.clamp(0.0, 1.0))


def sample_gaussian(mean: torch.Tensor, std: Optional[torch.Tensor] = None) -> torch.Tensor:
    """
    Sample from Gaussian distribution.

    Args:
        mean: Mean values [n_stripes, n_units]
        std: Standard deviation (if None, use unit variance)

    Returns:
        samples: Gaussian samples [n_stripes, n_units]
    """
    noise = torch.randn_like(mean)
    if std is not None:
        noise = noise * std
    return mean + noise


def sample_poisson(rates: torch.Tensor) -> torch.Tensor:
    """Draw Poisson counts with the given (non-negative) rates."""
    return torch.poisson(rates.clamp_min(0.0))


def sample_softmax_groups(probs: torch.Tensor, group_size: int) -> torch.Tensor:
    """
    Draw one unit per group of ``group_size`` consecutive units.

    Groups whose probabilities sum to zero stay all zero.

    Args:
        probs: Group probabilities [n_stripes, n_units], n_units divisible by group_size

    Returns:
        samples: One-hot samples with exactly one 1 per non-degenerate group
    """
    n_stripes, size = probs.shape
    groups = probs.reshape(-1, group_size).clamp_min(0.0)
    totals = groups.sum(dim=1, keepdim=True)
    degenerate = totals.squeeze(1) <= 0
    safe = torch.where(degenerate.unsqueeze(1), torch.ones_like(groups), groups)
    picks = torch.multinomial(safe, 1)
    samples = torch.zeros_like(groups)
    samples.scatter_(1, picks, 1.0)
    samples[degenerate] = 0.0
    return samples.reshape(n_stripes, size)


def _broadcast_scale(scale: ScaleLike, n_stripes: int, like: torch.Tensor) -> torch.Tensor:
    if isinstance(scale, torch.Tensor):
        scale = scale.to(dtype=like.dtype, device=like.device).reshape(-1)
        if scale.numel() == 1:
            return scale.expand(n_stripes).reshape(n_stripes, 1, 1)
        if scale.numel() != n_stripes:
            raise ValueError(f"Got {scale.numel()} per-stripe scales for {n_stripes} stripes")
        return scale.reshape(n_stripes, 1, 1)
    return torch.full((n_stripes, 1, 1), float(scale), dtype=like.dtype, device=like.device)


def normalize_groups(
    values: torch.Tensor,
    group_size: int,
    scale: ScaleLike = 1.0,
    exponentiate: bool = False,
) -> torch.Tensor:
    """
    Normalize groups of units so that each group sums to ``scale``.

    Args:
        values: Raw activations [n_stripes, n_units]
        group_size: Number of consecutive units per group
        scale: Target group sum, scalar or one value per stripe
        exponentiate: Exponentiate (after subtracting the group max) first

    Returns:
        normalized: Tensor of the same shape; groups with a zero scale are
            left as computed before division

    Raises:
        ValueError: If a per-stripe scale does not have one value per stripe
    """
    n_stripes, size = values.shape
    groups = values.reshape(n_stripes, size // group_size, group_size)
    if exponentiate:
        groups = torch.exp(groups - groups.max(dim=2, keepdim=True).values)
    scale = _broadcast_scale(scale, n_stripes, values)
    sums = groups.sum(dim=2, keepdim=True)
    divisor = sums / scale
    keep = (scale == 0) | (divisor == 0)
    groups = torch.where(keep, groups, groups / torch.where(keep, torch.ones_like(divisor), divisor))
    return groups.reshape(n_stripes, size)


class VersionCounter:
    """Monotonic source of version stamps for activation caches."""

    def __init__(self, start: int = 0):
        self.last = start

    def next(self) -> int:
        self.last += 1
        return self.last
