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
Configuration management for CloudBM.

Model and trainer configurations are YAML or JSON documents validated with
jsonschema. ``ConfigManager.build_bm`` and ``ConfigManager.build_trainer``
turn a loaded configuration into machines and trainers.

Usage:
    from cloudbm.config import ConfigManager

    config = ConfigManager.load('experiments/rbm.yaml',
                                overrides={'training.learning_rate': 0.02})
    bm = ConfigManager.build_bm(config)
    trainer = ConfigManager.build_trainer(config, bm)

A minimal document:

    name: rbm
    model:
      type: rbm
      chunks:
        - {name: bias, kind: constant}
        - {name: inputs, kind: sigmoid, size: 784}
        - {name: features, kind: sigmoid, size: 500}
      visible: [bias, inputs]
      hidden: [features]
    training:
      algorithm: cd
      learning_rate: 0.1
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import copy
import json
import logging
import os

import torch
import yaml
from jsonschema import ValidationError, validate

from .models.bm import BoltzmannMachine
from .models.chunk import Chunk, make_chunk
from .models.dbm import DeepBoltzmannMachine
from .models.rbm import RestrictedBoltzmannMachine
from .training.trainers import HALF_HEARTED, BMTrainer, CDTrainer, PCDTrainer, make_sparsity_sources

logger = logging.getLogger(__name__)

_CHUNK_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "kind": {"type": "string"},
        "size": {"type": "integer", "minimum": 1},
    },
    "required": ["name", "kind"]
}

_NAMES_SCHEMA = {"type": "array", "items": {"type": "string"}}


class ConfigManager:
    """Load, validate and save configurations, and build machines from them."""

    # Configuration schema for validation
    CONFIG_SCHEMA = {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "description": {"type": "string"},
            "model": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": ["bm", "rbm", "dbm"]},
                    "chunks": {"type": "array", "items": _CHUNK_SCHEMA, "minItems": 1},
                    "visible": _NAMES_SCHEMA,
                    "hidden": _NAMES_SCHEMA,
                    "layers": {"type": "array", "items": _NAMES_SCHEMA, "minItems": 2},
                    "clouds": {
                        "type": "array",
                        "items": {"anyOf": [{"const": "merge"}, {"type": "object"}]}
                    },
                    "max_n_stripes": {"type": "integer", "minimum": 1},
                    "dtype": {"type": "string", "enum": ["float32", "float64"]}
                },
                "required": ["type", "chunks"]
            },
            "training": {
                "type": "object",
                "properties": {
                    "algorithm": {"type": "string", "enum": ["cd", "pcd"]},
                    "epochs": {"type": "integer", "minimum": 1},
                    "n_gibbs": {"type": "integer", "minimum": 1},
                    "n_particles": {"type": "integer", "minimum": 1},
                    "visible_sampling": {"type": "boolean"},
                    "hidden_sampling": {"enum": [True, False, HALF_HEARTED]},
                    "batch_size": {"type": ["integer", "null"], "minimum": 1},
                    "learning_rate": {"type": "number", "minimum": 0},
                    "momentum": {"type": "number", "minimum": 0},
                    "weight_decay": {"type": "number", "minimum": 0},
                    "sparsity": {
                        "type": "object",
                        "properties": {
                            "targets": {
                                "type": "object",
                                "additionalProperties": {"type": "number"}
                            },
                            "cost": {"type": "number"},
                            "damping": {"type": "number", "minimum": 0, "maximum": 1},
                            "kind": {"type": "string", "enum": ["normal", "cheating"]}
                        },
                        "required": ["targets"]
                    }
                },
                "required": ["algorithm"]
            }
        },
        "required": ["name", "model"]
    }

    @classmethod
    def load(
        cls,
        config_path: Union[str, Path],
        overrides: Optional[Dict[str, Any]] = None,
        validate_config: bool = True
    ) -> Dict[str, Any]:
        """
        Load configuration with optional overrides.

        Args:
            config_path: Path to a .yaml, .yml or .json file
            overrides: Dotted-key parameter overrides, e.g. {'training.n_gibbs': 5}
            validate_config: Whether to validate the configuration

        Returns:
            Loaded and processed configuration dictionary
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r') as f:
            if config_path.suffix.lower() in ['.yaml', '.yml']:
                config = yaml.safe_load(f)
            elif config_path.suffix.lower() == '.json':
                config = json.load(f)
            else:
                raise ValueError(f"Unsupported config format: {config_path.suffix}")

        logger.info(f"Loaded configuration from {config_path}")

        if overrides:
            config = cls._apply_overrides(config, overrides)
            logger.info(f"Applied {len(overrides)} parameter overrides")

        config = cls._substitute_env_vars(config)

        if validate_config:
            cls.validate(config)

        config['_metadata'] = {
            'loaded_from': str(config_path),
            'loaded_at': datetime.now().isoformat(),
            'overrides_applied': overrides is not None
        }
        return config

    @classmethod
    def validate(cls, config: Dict[str, Any]) -> None:
        """
        Validate configuration against schema.

        Raises:
            ValidationError: If configuration is invalid
        """
        try:
            validate(instance=config, schema=cls.CONFIG_SCHEMA)
            logger.info("Configuration validation passed")
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e.message}")
            raise

    @classmethod
    def save(
        cls,
        config: Dict[str, Any],
        output_path: Union[str, Path],
        format: str = 'yaml',
        include_metadata: bool = True
    ) -> None:
        """
        Save configuration to file.

        Args:
            config: Configuration dictionary to save
            output_path: Output file path
            format: Output format ('yaml' or 'json')
            include_metadata: Whether to include metadata in output
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        save_config = copy.deepcopy(config)
        if not include_metadata:
            save_config.pop('_metadata', None)

        with open(output_path, 'w') as f:
            if format.lower() == 'yaml':
                yaml.dump(save_config, f, default_flow_style=False, indent=2)
            elif format.lower() == 'json':
                json.dump(save_config, f, indent=2)
            else:
                raise ValueError(f"Unsupported format: {format}")

        logger.info(f"Saved configuration to {output_path}")

    @classmethod
    def merge(cls, *configs: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge configurations, later ones taking precedence."""
        if not configs:
            return {}
        result = copy.deepcopy(configs[0])
        for config in configs[1:]:
            result = cls._deep_merge(result, config)
        return result

    # Builders

    @staticmethod
    def _build_chunks(model_config: Dict[str, Any]) -> Dict[str, Chunk]:
        dtype = getattr(torch, model_config.get('dtype', 'float32'))
        chunks: Dict[str, Chunk] = {}
        deferred = []
        for entry in model_config['chunks']:
            options = {k: v for k, v in entry.items() if k not in ('name', 'kind')}
            options['dtype'] = dtype
            if 'hidden_source_chunk' in options:
                deferred.append((entry, options))
                continue
            chunks[entry['name']] = make_chunk(entry['kind'], entry['name'], **options)
        # Temporal chunks refer to their source by name
        for entry, options in deferred:
            source = options['hidden_source_chunk']
            if source not in chunks:
                raise KeyError(f"Chunk {entry['name']!r} refers to unknown chunk {source!r}")
            options['hidden_source_chunk'] = chunks[source]
            chunks[entry['name']] = make_chunk(entry['kind'], entry['name'], **options)
        if len(chunks) != len(model_config['chunks']):
            raise ValueError("Duplicate chunk names in configuration")
        return chunks

    @staticmethod
    def _select(chunks: Dict[str, Chunk], names: List[str]) -> List[Chunk]:
        try:
            return [chunks[name] for name in names]
        except KeyError as e:
            raise KeyError(f"Configuration refers to unknown chunk {e.args[0]!r}") from None

    @classmethod
    def build_bm(cls, config: Dict[str, Any]) -> BoltzmannMachine:
        """
        Construct a BM, RBM or DBM from the ``model`` section.

        Args:
            config: Full configuration (or just its model section)

        Returns:
            The machine
        """
        model_config = config.get('model', config)
        chunks = cls._build_chunks(model_config)
        model_type = model_config['type']
        clouds = model_config.get('clouds')
        max_n_stripes = model_config.get('max_n_stripes', 1)

        if model_type == 'dbm':
            if 'layers' not in model_config:
                raise ValueError("DBM configuration needs 'layers'")
            layers = [cls._select(chunks, names) for names in model_config['layers']]
            bm = DeepBoltzmannMachine(layers, clouds=clouds, max_n_stripes=max_n_stripes)
        else:
            if 'visible' not in model_config or 'hidden' not in model_config:
                raise ValueError(f"{model_type} configuration needs 'visible' and 'hidden'")
            cls_ = RestrictedBoltzmannMachine if model_type == 'rbm' else BoltzmannMachine
            bm = cls_(cls._select(chunks, model_config['visible']),
                      cls._select(chunks, model_config['hidden']),
                      clouds=clouds, max_n_stripes=max_n_stripes)

        logger.info(f"Built {type(bm).__name__} with {bm.n_weights()} weights")
        return bm

    @staticmethod
    def build_trainer(config: Dict[str, Any], bm: BoltzmannMachine) -> BMTrainer:
        """
        Construct a CD or PCD trainer from the ``training`` section.

        Args:
            config: Full configuration (or just its training section)
            bm: Machine to train

        Returns:
            The trainer
        """
        training_config = config.get('training', config)
        algorithm = training_config.get('algorithm', 'cd')
        kwargs = {
            key: training_config[key]
            for key in ('visible_sampling', 'hidden_sampling', 'learning_rate',
                        'momentum', 'weight_decay', 'batch_size', 'n_gibbs')
            if key in training_config
        }

        sparsity = training_config.get('sparsity')
        if sparsity:
            kwargs['sparsity_sources'] = make_sparsity_sources(
                bm,
                sparsity['targets'],
                cost=sparsity.get('cost', 0.1),
                damping=sparsity.get('damping', 0.9),
                kind=sparsity.get('kind', 'normal'),
            )

        if algorithm == 'cd':
            return CDTrainer(bm, **kwargs)
        if algorithm == 'pcd':
            return PCDTrainer(bm, n_particles=training_config.get('n_particles', 100), **kwargs)
        raise ValueError(f"Unknown training algorithm: {algorithm}")

    @staticmethod
    def epochs(config: Dict[str, Any], default: int = 10) -> int:
        """Number of epochs for ``TrainingLoop.train`` from the ``training`` section."""
        training_config = config.get('training', config)
        return int(training_config.get('epochs', default))

    # Helpers

    @staticmethod
    def _apply_overrides(config: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Apply parameter overrides using dot notation."""
        result = copy.deepcopy(config)
        for key, value in overrides.items():
            ConfigManager._set_nested_value(result, key, value)
        return result

    @staticmethod
    def _substitute_env_vars(config: Dict[str, Any]) -> Dict[str, Any]:
        """Substitute ``${VAR}`` and ``${VAR:default}`` string values."""
        def substitute_recursive(obj):
            if isinstance(obj, dict):
                return {k: substitute_recursive(v) for k, v in obj.items()}
            elif isinstance(obj, list):
                return [substitute_recursive(item) for item in obj]
            elif isinstance(obj, str) and obj.startswith('${') and obj.endswith('}'):
                env_var = obj[2:-1]
                default_value = None
                if ':' in env_var:
                    env_var, default_value = env_var.split(':', 1)
                return os.getenv(env_var, default_value)
            else:
                return obj

        return substitute_recursive(config)

    @staticmethod
    def _deep_merge(dict1: Dict[str, Any], dict2: Dict[str, Any]) -> Dict[str, Any]:
        result = copy.deepcopy(dict1)
        for key, value in dict2.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = ConfigManager._deep_merge(result[key], value)
            else:
                result[key] = copy.deepcopy(value)
        return result

    @staticmethod
    def _set_nested_value(config: Dict[str, Any], key_path: str, value: Any) -> None:
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            current = current.setdefault(key, {})
        current[keys[-1]] = value


def load_config(config_path: Union[str, Path], **kwargs) -> Dict[str, Any]:
    """Convenience function to load configuration."""
    return ConfigManager.load(config_path, **kwargs)
