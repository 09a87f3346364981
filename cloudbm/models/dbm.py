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
Deep Boltzmann Machine organized in layers

A DBM is a Boltzmann machine whose chunks are partitioned into ordered
layers with clouds only between adjacent layers (or within a layer).
Visible and hidden chunks are inferred from the layers. Hidden means are
initialized with an approximate bottom-up pass (``up_dbm``) that doubles
the input of chunks that also receive top-down input, then refined by
mean-field settling. ``layer_rbms`` builds the stack of RBMs used for
greedy layer-wise pretraining; they share the DBM's weights.
"""

from typing import Any, List, Optional, Sequence, Tuple
import copy
import logging

from .bm import BoltzmannMachine, _check_unique_names, hijack_means_to_activation, resolve_clouds
from .chunk import Chunk
from .cloud import Cloud, _nodes, default_cloud_specs
from .rbm import RestrictedBoltzmannMachine

logger = logging.getLogger(__name__)


def classify_layer_chunks(
    layers: Sequence[Sequence[Chunk]], clouds: Sequence[Cloud]
) -> Tuple[List[Chunk], List[Chunk]]:
    """
    Split layered chunks into visible and hidden ones.

    Chunks of the first layer are visible. A chunk of a later layer is
    hidden iff a cloud connects it to a chunk of a lower layer.
    """
    visible: List[Chunk] = list(layers[0]) if layers else []
    hidden: List[Chunk] = []
    lower_ids = {id(c) for c in visible}
    for layer in layers[1:]:
        for chunk in layer:
            connected = any(
                (cloud.chunk1 is chunk and id(cloud.chunk2) in lower_ids)
                or (cloud.chunk2 is chunk and id(cloud.chunk1) in lower_ids)
                for cloud in clouds
            )
            (hidden if connected else visible).append(chunk)
        lower_ids.update(id(c) for c in layer)
    return visible, hidden


class DeepBoltzmannMachine(BoltzmannMachine):
    """
    Layered Boltzmann machine with approximate up/down inference passes.

    ``clouds_up_to_layers[i]`` holds the clouds between layer i-1 and
    layer i (empty for layer 0).
    """

    def __init__(
        self,
        layers: Sequence[Sequence[Chunk]],
        clouds: Optional[Sequence[Any]] = None,
        max_n_stripes: int = 1,
        visible_chunks: Optional[Sequence[Chunk]] = None,
        hidden_chunks: Optional[Sequence[Chunk]] = None,
        **kwargs
    ):
        """
        Initialize Deep Boltzmann Machine.

        Args:
            layers: Chunks of each layer, bottom first
            clouds: Cloud entries; ``None`` or ``"merge"`` adds full clouds
                between every pair of chunks in adjacent layers
            max_n_stripes: Stripe capacity of every chunk
            visible_chunks: Must not be given, visible chunks are inferred
            hidden_chunks: Must not be given, hidden chunks are inferred
        """
        if visible_chunks is not None or hidden_chunks is not None:
            raise ValueError("DBM infers visible and hidden chunks from its layers")
        if len(layers) < 2:
            raise ValueError("DBM requires at least 2 layers")
        layers = [list(layer) for layer in layers]
        chunks = [chunk for layer in layers for chunk in layer]
        _check_unique_names(chunks, "chunk")

        pairs = [
            (lower, upper)
            for below, above in zip(layers, layers[1:])
            for lower in below
            for upper in above
        ]
        resolved = resolve_clouds(clouds, default_cloud_specs(pairs), chunks)

        layer_of = {id(chunk): i for i, layer in enumerate(layers) for chunk in layer}
        for cloud in resolved:
            if abs(layer_of[id(cloud.chunk1)] - layer_of[id(cloud.chunk2)]) > 1:
                raise ValueError(f"Cloud {cloud.name!r} spans non-adjacent layers")

        visible, hidden = classify_layer_chunks(layers, resolved)
        super().__init__(visible, hidden, clouds=resolved, max_n_stripes=max_n_stripes, **kwargs)

        self.layers: List[List[Chunk]] = layers
        self.clouds_up_to_layers: List[List[Cloud]] = [[] for _ in layers]
        for cloud in self.clouds:
            i, j = sorted((layer_of[id(cloud.chunk1)], layer_of[id(cloud.chunk2)]))
            if i != j:
                self.clouds_up_to_layers[j].append(cloud)
        logger.debug(f"DBM layers: {[[c.name for c in layer] for layer in layers]}")

    @staticmethod
    def _has_input_through(chunk: Chunk, clouds: Sequence[Cloud]) -> bool:
        for cloud in clouds:
            if cloud.chunk1 is chunk and not cloud.chunk2.is_conditioning:
                return True
            if cloud.chunk2 is chunk and not cloud.chunk1.is_conditioning:
                return True
        return False

    def _layer_pass(self, targets: List[Chunk], source_clouds: List[Cloud],
                    doubling_clouds: List[Cloud]) -> None:
        for chunk in targets:
            chunk.swap_nodes()
        hijack_means_to_activation(targets, source_clouds, from_fn=_nodes)
        for chunk in targets:
            if self._has_input_through(chunk, doubling_clouds):
                chunk.nodes.mul_(2.0)
            chunk.set_chunk_mean()

    def up_dbm(self) -> None:
        """
        Bottom-up pass over the hidden chunks, layer by layer.

        Each layer is activated only from the layer below; chunks that are
        also connected to the layer above get their activation doubled.
        """
        hidden_ids = {id(c) for c in self.hidden_chunks}
        n_layers = len(self.layers)
        for i in range(1, n_layers):
            targets = [c for c in self.layers[i] if id(c) in hidden_ids and not c.is_conditioning]
            if not targets:
                continue
            above = self.clouds_up_to_layers[i + 1] if i + 1 < n_layers else []
            self._layer_pass(targets, self.clouds_up_to_layers[i], above)

    def down_dbm(self, include_visible: bool = False) -> None:
        """
        Top-down pass from the layer below the top to the bottom.

        Each layer is activated only from the layer above; chunks that are
        also connected to the layer below get their activation doubled.
        """
        hidden_ids = {id(c) for c in self.hidden_chunks}
        for i in range(len(self.layers) - 2, -1, -1):
            targets = [
                c for c in self.layers[i]
                if not c.is_conditioning and (include_visible or id(c) in hidden_ids)
            ]
            if not targets:
                continue
            self._layer_pass(targets, self.clouds_up_to_layers[i + 1], self.clouds_up_to_layers[i])

    def initialize_hidden_mean(self) -> None:
        self.up_dbm()

    def layer_rbms(self) -> List[RestrictedBoltzmannMachine]:
        """
        RBMs for greedy layer-wise pretraining, one per adjacent layer pair.

        Each RBM gets its own copies of the chunks and clouds sharing this
        DBM's weights. With more than two layers, activations into inner
        layers are doubled through the cloud scales.
        """
        n_layers = len(self.layers)
        rbms = []
        for i in range(n_layers - 1):
            lower = {id(c): copy.deepcopy(c) for c in self.layers[i]}
            upper = {id(c): copy.deepcopy(c) for c in self.layers[i + 1]}
            up_scale = 2.0 if n_layers > 2 and i < n_layers - 2 else 1.0
            down_scale = 2.0 if n_layers > 2 and i > 0 else 1.0
            clouds = []
            for cloud in self.clouds_up_to_layers[i + 1]:
                if id(cloud.chunk1) in lower:
                    clouds.append(cloud.rebind(lower[id(cloud.chunk1)], upper[id(cloud.chunk2)],
                                               scale1=down_scale, scale2=up_scale))
                else:
                    clouds.append(cloud.rebind(upper[id(cloud.chunk1)], lower[id(cloud.chunk2)],
                                               scale1=up_scale, scale2=down_scale))
            rbms.append(RestrictedBoltzmannMachine(
                list(lower.values()), list(upper.values()),
                clouds=clouds, max_n_stripes=self.max_n_stripes,
            ))
        return rbms
