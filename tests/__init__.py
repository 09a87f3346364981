"""
CloudBM Test Suite

Test Structure:
- test_chunk.py: Chunk activation laws, samplers and buffers
- test_cloud.py: Cloud specs, activation, caching, statistics and weight I/O
- test_bm.py: Boltzmann machine inference, input clamping and persistence
- test_dbm.py: Layer classification, up/down passes and pretraining RBMs
- test_trainers.py: Gradient accumulation, CD, PCD and sparsity
- test_loop.py: Training loop, callbacks and evaluation
- test_config.py: Configuration loading, validation and builders

Usage:
    # Run all tests
    python tests/run_tests.py

    # Run specific test module
    python tests/run_tests.py --test test_cloud

    # Or with pytest
    pytest tests
"""

import sys
import warnings
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

warnings.filterwarnings('ignore', category=UserWarning)
warnings.filterwarnings('ignore', category=FutureWarning)

# Test configuration
TEST_CONFIG = {
    'random_seed': 42,
    'device': 'cpu',
    'batch_size': 8,
    'tolerance': 1e-5,
}

__all__ = ['TEST_CONFIG']
