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
CloudBM: Boltzmann machines assembled from chunks and clouds.

Subpackages:
- cloudbm.models: chunks, clouds and BM/RBM/DBM inference
- cloudbm.training: gradient accumulation, CD/PCD trainers, training loops
- cloudbm.config: YAML/JSON model and trainer configuration
"""

__version__ = "0.1.0"
