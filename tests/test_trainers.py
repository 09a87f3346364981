#!/usr/bin/env python3
"""
Unit tests for CloudBM training.

Covers the segmented gradient accumulator, Contrastive Divergence,
Persistent Contrastive Divergence and sparsity gradients.
"""

import unittest
import torch
import torch.nn as nn
from pathlib import Path
import sys

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))

from cloudbm.models.bm import BoltzmannMachine
from cloudbm.models.chunk import ConstrainedPoissonChunk, SigmoidChunk
from cloudbm.models.cloud import FullCloud
from cloudbm.models.rbm import RestrictedBoltzmannMachine, make_rbm
from cloudbm.training.gradient import SegmentedGDTrainer, accumulate_cloud_statistics, add_to_segment
from cloudbm.training.trainers import (
    HALF_HEARTED,
    CDTrainer,
    PCDTrainer,
    SparsityGradientSource,
    make_sparsity_sources,
)
from tests import TEST_CONFIG


def segment_region(optimizer, segment):
    with optimizer.with_segment_gradient_accumulator(segment) as (start, accumulator):
        return accumulator[start:start + segment.numel()].view(segment.shape).clone()


class TestSegmentedGDTrainer(unittest.TestCase):
    """Test cases for the gradient accumulator and optimizer."""

    def setUp(self):
        self.w1 = nn.Parameter(torch.zeros(2, 2), requires_grad=False)
        self.w2 = nn.Parameter(torch.zeros(3), requires_grad=False)
        self.optimizer = SegmentedGDTrainer([self.w1, self.w2, self.w1], learning_rate=0.1, momentum=0.0)

    def test_layout(self):
        self.assertEqual(self.optimizer.n_weights, 7)
        self.assertEqual(len(self.optimizer.segments), 2)
        with self.optimizer.with_segment_gradient_accumulator(self.w2) as (start, accumulator):
            self.assertEqual(start, 4)
            self.assertIs(accumulator, self.optimizer.accumulator)

    def test_untrained_segment(self):
        other = nn.Parameter(torch.zeros(2), requires_grad=False)
        with self.optimizer.with_segment_gradient_accumulator(other) as (start, accumulator):
            self.assertIsNone(start)
            self.assertIsNone(accumulator)
        self.assertFalse(add_to_segment(self.optimizer, other, torch.ones(2)))

    def test_update_divides_by_inputs(self):
        add_to_segment(self.optimizer, self.w1, torch.ones(2, 2), multiplier=4.0)
        self.assertTrue(self.optimizer.maybe_update_weights(2))
        self.assertTrue(torch.allclose(self.w1, torch.full((2, 2), -0.2)))
        self.assertTrue(torch.all(self.w2 == 0))
        self.assertTrue(torch.all(self.optimizer.accumulator == 0))
        self.assertEqual(self.optimizer.n_updates, 1)

    def test_batch_size_delays_update(self):
        optimizer = SegmentedGDTrainer([self.w1], learning_rate=0.1, batch_size=10)
        add_to_segment(optimizer, self.w1, torch.ones(2, 2))
        self.assertFalse(optimizer.maybe_update_weights(4))
        self.assertTrue(torch.all(self.w1 == 0))
        self.assertTrue(optimizer.maybe_update_weights(6))
        self.assertTrue(torch.allclose(self.w1, torch.full((2, 2), -0.01)))

    def test_momentum_and_weight_decay(self):
        w = nn.Parameter(torch.ones(1), requires_grad=False)
        optimizer = SegmentedGDTrainer([w], learning_rate=0.1, momentum=0.5, weight_decay=0.1)
        optimizer.maybe_update_weights(1)
        self.assertTrue(torch.allclose(w, torch.tensor([0.99])))
        add_to_segment(optimizer, w, torch.zeros(1))
        optimizer.maybe_update_weights(1)
        # velocity = 0.5 * 0.01 + 0.1 * 0.1 * 0.99
        self.assertTrue(torch.allclose(w, torch.tensor([0.99 - 0.005 - 0.0099])))

    def test_for_bm_selected_clouds(self):
        bm = make_rbm(3, 2)
        optimizer = SegmentedGDTrainer.for_bm(bm, cloud_names=["inputs-features"])
        self.assertEqual(optimizer.n_weights, 6)


class TestCDTrainer(unittest.TestCase):
    """Test cases for Contrastive Divergence."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])
        self.rbm = make_rbm(2, 2, use_bias=False)
        self.cloud = self.rbm.find_cloud("inputs-features")
        self.cloud.weights.data.copy_(torch.tensor([[0.5, -0.5], [1.0, 0.25]]))
        self.x = torch.tensor([[1.0, 0.0]])

    def test_mean_field_gradient(self):
        trainer = CDTrainer(self.rbm, n_gibbs=1, hidden_sampling=False, batch_size=100)
        trainer.train_batch(self.x)

        w = self.cloud.weights
        h = torch.sigmoid(self.x @ w)
        v_neg = torch.sigmoid(h @ w.t())
        h_neg = torch.sigmoid(v_neg @ w)
        expected = -self.x.t() @ h + v_neg.t() @ h_neg

        accumulated = segment_region(trainer.optimizer, w)
        self.assertTrue(torch.allclose(accumulated, expected, atol=1e-6))
        self.assertFalse(torch.all(accumulated == 0))
        self.assertEqual(trainer.optimizer.n_updates, 0)

    def test_half_hearted_positive_statistics_use_means(self):
        trainer = CDTrainer(self.rbm, hidden_sampling=HALF_HEARTED, batch_size=100)
        self.rbm.set_input(self.x)
        trainer.positive_phase()

        hidden = self.rbm.hidden_chunk
        self.assertTrue(torch.all((hidden.nodes == 0) | (hidden.nodes == 1)))
        expected = -self.x.t() @ torch.sigmoid(self.x @ self.cloud.weights)
        accumulated = segment_region(trainer.optimizer, self.cloud.weights)
        self.assertTrue(torch.allclose(accumulated, expected, atol=1e-6))

    def test_train_batch_updates_weights(self):
        before = self.cloud.weights.clone()
        trainer = CDTrainer(self.rbm, learning_rate=0.5)
        metrics = trainer.train_batch(torch.tensor([[1.0, 0.0], [0.0, 1.0]]))
        self.assertEqual(metrics['n_inputs'], 2)
        self.assertGreaterEqual(metrics['reconstruction_error'], 0.0)
        self.assertFalse(torch.equal(before, self.cloud.weights))
        self.assertEqual(trainer.n_inputs, 2)

    def test_requires_rbm(self):
        bm = BoltzmannMachine([SigmoidChunk("v", 2)], [SigmoidChunk("h", 2)])
        with self.assertRaises(TypeError):
            CDTrainer(bm)

    def test_invalid_hidden_sampling(self):
        with self.assertRaises(ValueError):
            CDTrainer(self.rbm, hidden_sampling="sometimes")


class TestPCDTrainer(unittest.TestCase):
    """Test cases for Persistent Contrastive Divergence."""

    def setUp(self):
        torch.manual_seed(TEST_CONFIG['random_seed'])
        self.rbm = make_rbm(3, 2, max_n_stripes=4)
        self.batch = torch.bernoulli(torch.full((4, 3), 0.5))

    def test_chain_is_persistent(self):
        trainer = PCDTrainer(self.rbm, n_particles=5, batch_size=1000)
        trainer.train_batch(self.batch)
        chain = trainer.persistent_chain
        self.assertIsNotNone(chain)
        self.assertEqual(chain.n_stripes, 5)
        self.assertEqual(self.rbm.n_stripes, 4)
        for original, copied in zip(self.rbm.clouds, chain.clouds):
            self.assertIs(copied.weights, original.weights)

        trainer.train_batch(self.batch[:2])
        self.assertIs(trainer.persistent_chain, chain)
        self.assertEqual(chain.n_stripes, 5)

    def test_negative_statistics_scaled_by_particles(self):
        trainer = PCDTrainer(self.rbm, n_particles=5, hidden_sampling=False, batch_size=1000)
        self.rbm.set_input(self.batch)
        weights = self.rbm.find_cloud("inputs-features").weights
        before = segment_region(trainer.optimizer, weights)

        trainer.negative_phase()

        chain = trainer.persistent_chain
        v, h = chain.find_chunk("inputs"), chain.find_chunk("features")
        expected = (4 / 5) * v.nodes.t() @ h.nodes
        delta = segment_region(trainer.optimizer, weights) - before
        self.assertTrue(torch.allclose(delta, expected, atol=1e-5))

    def test_particles_cycle_per_stripe_scales(self):
        words = ConstrainedPoissonChunk("words", 4, max_n_stripes=3)
        topics = SigmoidChunk("topics", 2, max_n_stripes=3)
        rbm = RestrictedBoltzmannMachine([words], [topics], max_n_stripes=3)
        batch = torch.tensor([[1.0, 0.0, 2.0, 0.0], [0.0, 3.0, 0.0, 0.0], [1.0, 1.0, 1.0, 1.0]])
        trainer = PCDTrainer(rbm, n_particles=5, batch_size=1000)
        trainer.train_batch(batch)

        chain_words = trainer.persistent_chain.find_chunk("words")
        expected = torch.tensor([3.0, 3.0, 4.0, 3.0, 3.0])
        self.assertTrue(torch.equal(chain_words.scale, expected))
        self.assertTrue(torch.allclose(chain_words.nodes.sum(dim=1), expected, atol=1e-5))

    def test_self_connected_cloud_rejected(self):
        v, h = SigmoidChunk("v", 2), SigmoidChunk("h", 2)
        bm = BoltzmannMachine([v], [h], clouds=["merge", {"chunk1": "h", "chunk2": "h"}])
        trainer = PCDTrainer(bm, n_particles=2)
        with self.assertRaises(ValueError):
            trainer.train_batch(torch.ones(1, 2))

    def test_general_bm_with_hidden_to_hidden(self):
        h1, h2 = SigmoidChunk("h1", 2), SigmoidChunk("h2", 2)
        bm = BoltzmannMachine([SigmoidChunk("v", 3)], [h1, h2],
                              clouds=["merge", {"chunk1": "h1", "chunk2": "h2"}])
        trainer = PCDTrainer(bm, n_particles=3)
        metrics = trainer.train_batch(self.batch)
        self.assertEqual(metrics['n_inputs'], 4)
        self.assertEqual(trainer.optimizer.n_updates, 1)


class TestSparsity(unittest.TestCase):
    """Test cases for sparsity gradient sources."""

    def setUp(self):
        self.v = SigmoidChunk("v", 2, max_n_stripes=2)
        self.h = SigmoidChunk("h", 3, max_n_stripes=2)
        self.cloud = FullCloud(self.v, self.h)
        self.v.nodes.copy_(torch.tensor([[1.0, 0.0], [1.0, 1.0]]))
        self.h_means = torch.tensor([[0.2, 0.4, 0.6], [0.8, 0.0, 0.2]])
        self.h.nodes.copy_(self.h_means)
        self.h.snapshot_means()

    def test_normal_gradient(self):
        source = SparsityGradientSource(self.cloud, self.h, target=0.1, cost=1.0, kind="normal")
        source.accumulate()
        v = self.v.nodes
        expected = v.t() @ self.h_means / 2 - 0.1 * v.mean(dim=0).unsqueeze(1)
        self.assertTrue(torch.allclose(source.gradient(), expected))

    def test_cheating_gradient(self):
        source = SparsityGradientSource(self.cloud, self.h, target=0.1, cost=1.0, kind="cheating")
        source.accumulate()
        v = self.v.nodes
        expected = v.mean(dim=0).unsqueeze(1) * (self.h_means.mean(dim=0) - 0.1).unsqueeze(0)
        self.assertTrue(torch.allclose(source.gradient(), expected))

        normal = SparsityGradientSource(self.cloud, self.h, target=0.1, cost=1.0, kind="normal")
        normal.accumulate()
        self.assertFalse(torch.allclose(source.gradient(), normal.gradient()))

    def test_damping(self):
        source = SparsityGradientSource(self.cloud, self.h, target=0.0, cost=1.0, damping=0.9)
        source.accumulate()
        first = source.gradient().clone()
        self.h.nodes.zero_()
        self.h.snapshot_means()
        source.accumulate()
        self.assertTrue(torch.allclose(source.gradient(), 0.9 * first))

    def test_flush_into_accumulator(self):
        optimizer = SegmentedGDTrainer([self.cloud.weights])
        source = SparsityGradientSource(self.cloud, self.h, target=0.1, cost=0.5)
        source.flush(optimizer, 2)
        self.assertTrue(torch.all(optimizer.accumulator == 0))

        source.accumulate()
        source.flush(optimizer, 2)
        expected = 2 * source.gradient()
        self.assertTrue(torch.allclose(segment_region(optimizer, self.cloud.weights), expected))

    def test_chunk1_gradient_is_transposed(self):
        optimizer = SegmentedGDTrainer([self.cloud.weights])
        source = SparsityGradientSource(self.cloud, self.v, target=0.1)
        source.accumulate()
        self.assertEqual(source.gradient().shape, (3, 2))
        source.flush(optimizer, 1)
        self.assertTrue(torch.allclose(segment_region(optimizer, self.cloud.weights),
                                       source.gradient().t()))

    def test_stripe_mismatch(self):
        source = SparsityGradientSource(self.cloud, self.h, target=0.1)
        self.h.n_stripes = 1
        with self.assertRaises(AssertionError):
            source.accumulate()

    def test_invalid_arguments(self):
        with self.assertRaises(ValueError):
            SparsityGradientSource(self.cloud, SigmoidChunk("x", 3), target=0.1)
        with self.assertRaises(ValueError):
            SparsityGradientSource(self.cloud, self.h, target=0.1, kind="strict")

    def test_trainer_with_sparsity(self):
        rbm = make_rbm(3, 2)
        sources = make_sparsity_sources(rbm, {"features": 0.05}, kind="cheating")
        self.assertEqual(len(sources), 2)
        trainer = CDTrainer(rbm, sparsity_sources=sources)
        metrics = trainer.train_batch(torch.tensor([[1.0, 0.0, 1.0]]))
        self.assertEqual(metrics['n_inputs'], 1)
        self.assertIsNotNone(sources[0].other_sums)


class TestAccumulateCloudStatistics(unittest.TestCase):
    """Test cases for accumulate_cloud_statistics."""

    def test_multiplier(self):
        rbm = make_rbm(2, 2, use_bias=False)
        cloud = rbm.clouds[0]
        rbm.visible_chunk.nodes.copy_(torch.tensor([[1.0, 2.0]]))
        rbm.hidden_chunk.nodes.copy_(torch.tensor([[3.0, 4.0]]))
        optimizer = SegmentedGDTrainer.for_bm(rbm)
        accumulate_cloud_statistics(optimizer, rbm, cloud, -1.0)
        expected = -torch.tensor([[3.0, 4.0], [6.0, 8.0]])
        self.assertTrue(torch.allclose(segment_region(optimizer, cloud.weights), expected))


if __name__ == '__main__':
    unittest.main()
