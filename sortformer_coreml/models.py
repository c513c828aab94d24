"""
Streaming state container for the Sortformer main model.

Holds the aligned chunk / FIFO / speaker cache buffers and their length
scalars, refills them for every chunk and runs the main model once.
"""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import coremltools as ct
import numpy as np

from .buffers import AlignedBufferPool, ArrayLike
from .config import SortformerConfig
from .engine import InferenceEngine
from .inference import MainModelOutput, run_main_model
from .loading import load_local_model, load_remote_model

logger = logging.getLogger(__name__)


class SortformerModels:
    """
    Main Sortformer model plus the cached input buffers it is fed from.

    The engine may be shared between containers; buffers may not. Calls to
    ``run_main_model`` on one instance are serialized by an internal lock and
    must be submitted in chunk order.
    """

    def __init__(
            self,
            config: SortformerConfig,
            main: InferenceEngine,
            compilation_duration: float = 0.0,
    ):
        self.config = config
        self.main_model = main
        self.compilation_duration = compilation_duration

        self._lock = threading.Lock()
        self.buffer_pool = AlignedBufferPool()
        self._chunk = self.buffer_pool.allocate(config.chunk_shape, np.float32)
        self._fifo = self.buffer_pool.allocate(config.fifo_shape, np.float32)
        self._spkcache = self.buffer_pool.allocate(config.spkcache_shape, np.float32)
        self._chunk_length = self.buffer_pool.allocate((1,), np.int32)
        self._fifo_length = self.buffer_pool.allocate((1,), np.int32)
        self._spkcache_length = self.buffer_pool.allocate((1,), np.int32)

        # Same arrays every call, only their contents change
        self._inputs: Dict[str, np.ndarray] = {
            "chunk": self._chunk,
            "chunk_lengths": self._chunk_length,
            "spkcache": self._spkcache,
            "spkcache_lengths": self._spkcache_length,
            "fifo": self._fifo,
            "fifo_lengths": self._fifo_length,
        }

    @classmethod
    def load(
            cls,
            config: SortformerConfig,
            main_model_path: Union[str, Path],
            compute_units: Optional[ct.ComputeUnit] = None,
    ) -> "SortformerModels":
        """Load from a local ``.mlpackage`` / ``.mlmodelc``."""
        handle = load_local_model(main_model_path, compute_units=compute_units)
        return cls(config, handle.engine, compilation_duration=handle.compilation_duration)

    @classmethod
    def load_from_hugging_face(
            cls,
            config: SortformerConfig,
            cache_directory: Optional[Union[str, Path]] = None,
            compute_units: Optional[ct.ComputeUnit] = None,
    ) -> "SortformerModels":
        """Download the bundle matching ``config`` if needed and load it."""
        handle = load_remote_model(config, cache_directory=cache_directory, compute_units=compute_units)
        return cls(config, handle.engine, compilation_duration=handle.compilation_duration)

    @property
    def buffer_shapes(self) -> Dict[str, Tuple[int, ...]]:
        return {name: array.shape for name, array in self._inputs.items()}

    def staged_inputs(self) -> Dict[str, np.ndarray]:
        """Read-only views of the tensors passed to the model on the last call."""
        views = {}
        for name, array in self._inputs.items():
            view = array.view()
            view.flags.writeable = False
            views[name] = view
        return views

    @staticmethod
    def _clamp_length(name: str, length: int, capacity: int) -> int:
        length = int(length)
        clamped = min(max(length, 0), capacity)
        if clamped != length:
            logger.debug(f"Clamping {name} {length} to [0, {capacity}]")
        return clamped

    def run_main_model(
            self,
            chunk: ArrayLike,
            chunk_length: int,
            spkcache: ArrayLike,
            spkcache_length: int,
            fifo: ArrayLike,
            fifo_length: int,
    ) -> MainModelOutput:
        """
        Run main Sortformer model.

        Args:
            chunk: Feature chunk [T, mel_features] transposed from mel
            chunk_length: Actual chunk length
            spkcache: Speaker cache embeddings [spkcache_len, pre_encoder_dims]
            spkcache_length: Actual speaker cache length
            fifo: FIFO queue embeddings [fifo_len, pre_encoder_dims]
            fifo_length: Actual FIFO length

        Returns:
            MainModelOutput with predictions and embeddings

        Raises:
            InferenceFailed: if the model call fails or misses an output.
        """
        config = self.config
        with self._lock:
            self.buffer_pool.copy_padded(chunk, self._chunk)
            self.buffer_pool.copy_padded(fifo, self._fifo)
            self.buffer_pool.copy_padded(spkcache, self._spkcache)

            self._chunk_length[0] = self._clamp_length("chunk_lengths", chunk_length, config.chunk_mel_frames)
            self._fifo_length[0] = self._clamp_length("fifo_lengths", fifo_length, config.fifo_len)
            self._spkcache_length[0] = self._clamp_length("spkcache_lengths", spkcache_length, config.spkcache_len)

            return run_main_model(self.main_model, self._inputs)
