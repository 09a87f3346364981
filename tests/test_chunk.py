#!/usr/bin/env python3
"""
Unit tests for CloudBM chunks.

Covers the activation laws of every chunk variant, the samplers and the
double-buffered node storage.
"""

import unittest
import torch
from pathlib import Path
import sys

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))

from cloudbm.models.chunk import (
    ConditioningChunk,
    ConstantChunk,
    ConstrainedPoissonChunk,
    GaussianChunk,
    NormalizedGroupChunk,
    SigmoidChunk,
    SoftmaxChunk,
    TemporalChunk,
    make_chunk,
)
from cloudbm.models.utils import normalize_groups, sample_softmax_groups
from tests import TEST_CONFIG


class TestChunkBuffers(unittest.TestCase):
    """Test cases for node buffers and stripes."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])
        self.chunk = SigmoidChunk("h", 4, max_n_stripes=3)

    def test_initialization(self):
        self.assertEqual(self.chunk.n_stripes, 3)
        self.assertEqual(self.chunk.max_n_stripes, 3)
        self.assertEqual(self.chunk.nodes.shape, (3, 4))
        self.assertEqual(self.chunk.means.shape, (3, 4))
        self.assertIsNone(self.chunk.version)

    def test_swap_nodes(self):
        self.chunk.nodes.fill_(1.0)
        self.chunk.swap_nodes()
        self.assertTrue(torch.all(self.chunk.nodes == 0))
        self.assertTrue(torch.all(self.chunk.old_nodes == 1))

    def test_n_stripes_bounded_by_capacity(self):
        with self.assertRaises(ValueError):
            self.chunk.n_stripes = 4
        self.chunk.n_stripes = 2
        self.assertEqual(self.chunk.nodes.shape, (2, 4))

    def test_resize_keeps_rows(self):
        self.chunk.nodes.copy_(torch.arange(12, dtype=torch.float32).reshape(3, 4))
        self.chunk.resize(5)
        self.assertEqual(self.chunk.max_n_stripes, 5)
        self.assertEqual(self.chunk.n_stripes, 3)
        self.assertTrue(torch.equal(self.chunk.nodes[2], torch.tensor([8.0, 9.0, 10.0, 11.0])))

    def test_indices_present_requires_single_stripe(self):
        with self.assertRaises(AssertionError):
            self.chunk.indices_present = [0, 2]
        self.chunk.n_stripes = 1
        self.chunk.indices_present = [0, 2]
        self.assertTrue(torch.equal(self.chunk.indices_present, torch.tensor([0, 2])))
        with self.assertRaises(AssertionError):
            self.chunk.n_stripes = 2

    def test_invalid_size(self):
        with self.assertRaises(ValueError):
            SigmoidChunk("h", 0)


class TestActivationLaws(unittest.TestCase):
    """Test cases for set_chunk_mean and sample_chunk."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])

    def test_sigmoid_chunk(self):
        chunk = SigmoidChunk("h", 5, max_n_stripes=4)
        activations = torch.randn(4, 5) * 3
        chunk.nodes.copy_(activations)
        chunk.set_chunk_mean()

        self.assertTrue(torch.allclose(chunk.nodes, torch.sigmoid(activations)))
        self.assertTrue(torch.all((chunk.nodes > 0) & (chunk.nodes < 1)))
        self.assertTrue(torch.equal(chunk.means, chunk.nodes))

        chunk.sample_chunk()
        self.assertTrue(torch.all((chunk.nodes == 0) | (chunk.nodes == 1)))
        # Sampling leaves the means untouched
        self.assertTrue(torch.allclose(chunk.means, torch.sigmoid(activations)))

    def test_gaussian_chunk(self):
        chunk = GaussianChunk("g", 3, max_n_stripes=2)
        activations = torch.randn(2, 3)
        chunk.nodes.copy_(activations)
        chunk.set_chunk_mean()
        self.assertTrue(torch.equal(chunk.nodes, activations))

    def test_softmax_groups_sum_to_one(self):
        chunk = SoftmaxChunk("s", 6, group_size=3, max_n_stripes=2)
        chunk.nodes.copy_(torch.randn(2, 6) * 5)
        chunk.set_chunk_mean()

        sums = chunk.nodes.reshape(2, 2, 3).sum(dim=2)
        self.assertTrue(torch.allclose(sums, torch.ones(2, 2), atol=TEST_CONFIG['tolerance']))

        chunk.sample_chunk()
        groups = chunk.nodes.reshape(2, 2, 3)
        self.assertTrue(torch.all((groups == 0) | (groups == 1)))
        self.assertTrue(torch.equal(groups.sum(dim=2), torch.ones(2, 2)))

    def test_softmax_is_stable_for_large_activations(self):
        chunk = SoftmaxChunk("s", 3, max_n_stripes=1)
        chunk.nodes.copy_(torch.tensor([[1000.0, 1000.0, -1000.0]]))
        chunk.set_chunk_mean()
        self.assertTrue(torch.all(torch.isfinite(chunk.nodes)))
        self.assertTrue(torch.allclose(chunk.nodes, torch.tensor([[0.5, 0.5, 0.0]])))

    def test_per_stripe_scale(self):
        chunk = NormalizedGroupChunk("n", 4, group_size=2, scale=torch.tensor([2.0, 5.0]),
                                     max_n_stripes=2)
        chunk.nodes.copy_(torch.tensor([[1.0, 3.0, 2.0, 2.0], [1.0, 1.0, 4.0, 1.0]]))
        chunk.set_chunk_mean()

        expected = torch.tensor([[0.5, 1.5, 1.0, 1.0], [2.5, 2.5, 4.0, 1.0]])
        self.assertTrue(torch.allclose(chunk.nodes, expected))

    def test_per_stripe_scale_length_must_match(self):
        chunk = NormalizedGroupChunk("n", 4, group_size=2, scale=torch.tensor([2.0, 5.0, 1.0]),
                                     max_n_stripes=2)
        with self.assertRaises(ValueError):
            chunk.set_chunk_mean()

    def test_zero_scale_skips_division(self):
        values = torch.tensor([[1.0, 3.0]])
        self.assertTrue(torch.equal(normalize_groups(values, 2, scale=0.0), values))

    def test_group_size_must_divide_size(self):
        with self.assertRaises(ValueError):
            SoftmaxChunk("s", 5, group_size=2)

    def test_degenerate_softmax_group_stays_zero(self):
        probs = torch.tensor([[0.0, 0.0, 0.2, 0.8]])
        samples = sample_softmax_groups(probs, 2)
        self.assertTrue(torch.equal(samples[0, :2], torch.zeros(2)))
        self.assertEqual(samples[0, 2:].sum().item(), 1.0)

    def test_constrained_poisson_scale_from_inputs(self):
        chunk = ConstrainedPoissonChunk("words", 3, max_n_stripes=2)
        chunk.clamp(torch.tensor([[1.0, 2.0, 3.0], [0.0, 4.0, 0.0]]))
        chunk.snapshot_inputs()
        self.assertTrue(torch.equal(chunk.scale, torch.tensor([6.0, 4.0])))

        chunk.nodes.zero_()
        chunk.set_chunk_mean()
        self.assertTrue(torch.allclose(chunk.nodes.sum(dim=1), torch.tensor([6.0, 4.0])))
        self.assertTrue(torch.allclose(chunk.nodes[0], torch.full((3,), 2.0)))

        chunk.sample_chunk()
        self.assertTrue(torch.all(chunk.nodes >= 0))
        self.assertTrue(torch.equal(chunk.nodes, chunk.nodes.round()))


class TestConditioningChunks(unittest.TestCase):
    """Test cases for clamped chunk variants."""

    def test_constant_chunk(self):
        chunk = ConstantChunk("bias", max_n_stripes=2)
        self.assertTrue(chunk.is_conditioning)
        self.assertIsNone(chunk.means)
        self.assertIsNone(chunk.inputs)
        chunk.resize(5)
        chunk.n_stripes = 5
        self.assertTrue(torch.all(chunk.nodes == 1))
        chunk.swap_nodes()
        self.assertTrue(torch.all(chunk.nodes == 1))
        chunk.set_chunk_mean()
        chunk.sample_chunk()
        self.assertTrue(torch.all(chunk.nodes == 1))

    def test_conditioning_clamp_writes_both_buffers(self):
        chunk = ConditioningChunk("c", 2, max_n_stripes=1)
        chunk.clamp(torch.tensor([[3.0, 4.0]]))
        self.assertTrue(torch.equal(chunk.nodes, chunk.old_nodes))

    def test_temporal_chunk(self):
        source = SigmoidChunk("h", 3, max_n_stripes=2)
        temporal = TemporalChunk("h-prev", source)
        self.assertEqual(temporal.size, 3)

        temporal.use_remembered()
        self.assertTrue(torch.all(temporal.nodes == 0))

        source.nodes.copy_(torch.tensor([[0.1, 0.2, 0.3], [0.4, 0.5, 0.6]]))
        source.snapshot_means()
        temporal.remember()
        source.nodes.zero_()
        source.snapshot_means()

        temporal.use_remembered()
        self.assertTrue(torch.allclose(temporal.nodes, torch.tensor([[0.1, 0.2, 0.3], [0.4, 0.5, 0.6]])))

        temporal.reset()
        temporal.use_remembered()
        self.assertTrue(torch.all(temporal.nodes == 0))

    def test_temporal_chunk_explicit_size(self):
        source = SigmoidChunk("h", 3)
        self.assertEqual(TemporalChunk("h-prev", source, size=3).size, 3)
        with self.assertRaises(ValueError):
            TemporalChunk("h-prev", source, size=2)


class TestMakeChunk(unittest.TestCase):
    """Test cases for the chunk factory."""

    def test_known_kinds(self):
        self.assertIsInstance(make_chunk("sigmoid", "a", 3), SigmoidChunk)
        self.assertIsInstance(make_chunk("softmax", "b", 4, group_size=2), SoftmaxChunk)
        self.assertIsInstance(make_chunk("constant", "bias"), ConstantChunk)

    def test_unknown_kind(self):
        with self.assertRaises(ValueError):
            make_chunk("ternary", "a", 3)


if __name__ == '__main__':
    unittest.main()
