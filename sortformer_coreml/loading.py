"""
Model acquisition: local CoreML packages and Hugging Face bundles.

Optional environment variables:
- SORTFORMER_CACHE_DIR: download directory for remote bundles (default: ~/.cache/sortformer_coreml).
- SORTFORMER_COMPUTE_UNITS: compute unit name (ALL, CPU_ONLY, CPU_AND_GPU, CPU_AND_NE).
- CI: when set, defaults to CPU_AND_NE instead of ALL.
"""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import coremltools as ct
from huggingface_hub import snapshot_download

from .config import SortformerConfig
from .engine import CoreMLEngine
from .errors import ModelLoadFailed

logger = logging.getLogger(__name__)

HF_REPO_ID = "FluidInference/diar-streaming-sortformer-coreml"

# (chunk_len, chunk_left_context, chunk_right_context, fifo_len, spkcache_len) -> bundle
_BUNDLES: Dict[Tuple[int, int, int, int, int], str] = {
    (6, 1, 7, 40, 188): "Sortformer.mlmodelc",
    (4, 2, 1, 63, 63): "SortformerLowLatency.mlmodelc",
}

_COMPUTE_UNIT_NAMES = ("ALL", "CPU_ONLY", "CPU_AND_GPU", "CPU_AND_NE")


@dataclass
class ModelHandle:
    engine: CoreMLEngine
    # Time taken to compile/load the model, in seconds
    compilation_duration: float


def _bundle_key(config: SortformerConfig) -> Tuple[int, int, int, int, int]:
    return (
        config.chunk_len,
        config.chunk_left_context,
        config.chunk_right_context,
        config.fifo_len,
        config.spkcache_len,
    )


def bundle_for(config: SortformerConfig) -> Optional[str]:
    """Name of the published bundle exported for ``config``, or None."""
    if config.mel_features != 128 or config.pre_encoder_dims != 512 or config.subsampling_factor != 8:
        return None
    return _BUNDLES.get(_bundle_key(config))


def parse_compute_units(name: str) -> ct.ComputeUnit:
    key = name.strip().upper()
    if key not in _COMPUTE_UNIT_NAMES or not hasattr(ct.ComputeUnit, key):
        raise ValueError(f"Unknown compute units {name!r}, expected one of {', '.join(_COMPUTE_UNIT_NAMES)}")
    return getattr(ct.ComputeUnit, key)


def default_compute_units() -> ct.ComputeUnit:
    override = os.environ.get("SORTFORMER_COMPUTE_UNITS")
    if override:
        return parse_compute_units(override)
    if os.environ.get("CI") is not None:
        return ct.ComputeUnit.CPU_AND_NE
    return ct.ComputeUnit.ALL


def default_cache_dir() -> Path:
    base = os.environ.get("SORTFORMER_CACHE_DIR")
    if base:
        return Path(base)
    return Path.home() / ".cache" / "sortformer_coreml"


def _open_model(path: Path, compute_units: ct.ComputeUnit):
    if path.suffix == ".mlmodelc":
        return ct.models.CompiledMLModel(str(path), compute_units=compute_units)
    return ct.models.MLModel(str(path), compute_units=compute_units)


def load_local_model(
        path: Union[str, Path],
        compute_units: Optional[ct.ComputeUnit] = None,
) -> ModelHandle:
    """
    Load a main model from an ``.mlpackage``, ``.mlmodel`` or compiled ``.mlmodelc``.

    Raises:
        ModelLoadFailed: if the path is missing or CoreML cannot load it.
    """
    path = Path(path)
    if compute_units is None:
        compute_units = default_compute_units()
    if not path.exists():
        raise ModelLoadFailed(f"Model not found: {path}")

    logger.info(f"Loading Sortformer main model from {path} ({compute_units.name})")
    start = time.perf_counter()
    try:
        model = _open_model(path, compute_units)
    except Exception as e:
        raise ModelLoadFailed(f"Failed to load {path}: {e}") from e
    duration = time.perf_counter() - start
    logger.info(f"Model loaded in {duration:.2f}s")

    return ModelHandle(engine=CoreMLEngine(model), compilation_duration=duration)


def load_remote_model(
        config: SortformerConfig,
        cache_directory: Optional[Union[str, Path]] = None,
        compute_units: Optional[ct.ComputeUnit] = None,
        revision: Optional[str] = None,
) -> ModelHandle:
    """
    Download (if not cached) and load the bundle exported for ``config``.

    Raises:
        ModelLoadFailed: if no bundle exists for ``config`` or download/load fails.
    """
    bundle = bundle_for(config)
    if bundle is None:
        raise ModelLoadFailed("Unsupported Sortformer configuration")

    directory = Path(cache_directory) if cache_directory is not None else default_cache_dir()
    logger.info(f"Downloading Sortformer bundle {bundle} from {HF_REPO_ID} into {directory}")

    start = time.perf_counter()
    try:
        snapshot = Path(
            snapshot_download(
                HF_REPO_ID,
                revision=revision,
                allow_patterns=[f"{bundle}/*"],
                cache_dir=str(directory),
            )
        )
    except Exception as e:
        raise ModelLoadFailed(f"Failed to download {bundle} from {HF_REPO_ID}: {e}") from e

    handle = load_local_model(snapshot / bundle, compute_units=compute_units)
    handle.compilation_duration = time.perf_counter() - start
    logger.info(f"Sortformer bundle {bundle} ready in {handle.compilation_duration:.2f}s")
    return handle
