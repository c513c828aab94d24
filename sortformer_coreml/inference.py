"""
Main model adapter: invokes the engine once and decodes its named outputs.

The head module may be exported at fp16, so ``chunk_pre_encoder_embs_out``
can come back as float16 or float32. Decoding is precision transparent:
callers always receive float32.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence

import numpy as np

from .engine import InferenceEngine
from .errors import InferenceFailed, SortformerError


# Output names, newest first. Exports made before the "_out" suffix reused
# the input names, which the macOS 26 BNNS compiler rejects.
PREDICTIONS_OUTPUTS = ("speaker_preds",)
CHUNK_LENGTHS_OUTPUTS = ("chunk_pre_encoder_lengths_out", "chunk_pre_encoder_lengths")
CHUNK_EMBEDDINGS_OUTPUTS = ("chunk_pre_encoder_embs_out", "chunk_pre_encoder_embs")

Decoder = Callable[[Any], Optional[np.ndarray]]


@dataclass
class MainModelOutput:
    # Raw predictions (logits) [spkcache_len + fifo_len + chunk_len, num_speakers], flattened
    predictions: np.ndarray
    # Chunk embeddings [chunk_len, pre_encoder_dims], flattened
    chunk_embeddings: np.ndarray
    # Actual chunk embedding length reported by the model
    chunk_length: int

    def predictions_matrix(self, num_speakers: int) -> np.ndarray:
        return self.predictions.reshape(-1, num_speakers)

    def chunk_embeddings_matrix(self, embedding_dims: int) -> np.ndarray:
        return self.chunk_embeddings.reshape(-1, embedding_dims)


def first_decoded(value: Any, decoders: Iterable[Decoder]) -> Optional[np.ndarray]:
    """Return the result of the first decoder that accepts ``value``."""
    if value is None:
        return None
    for decode in decoders:
        decoded = decode(value)
        if decoded is not None:
            return decoded
    return None


def first_output(outputs: Mapping[str, Any], names: Sequence[str], decoders: Iterable[Decoder]) -> Optional[np.ndarray]:
    decoders = tuple(decoders)
    for name in names:
        decoded = first_decoded(outputs.get(name), decoders)
        if decoded is not None:
            return decoded
    return None


def as_float32(value: Any) -> Optional[np.ndarray]:
    array = np.asarray(value)
    if array.dtype != np.float32:
        return None
    # Owned copy: engines may return the staged input buffers themselves
    return np.array(array, dtype=np.float32, copy=True).reshape(-1)


def upcast_to_float32(value: Any) -> Optional[np.ndarray]:
    array = np.asarray(value)
    if not np.issubdtype(array.dtype, np.floating):
        return None
    return array.astype(np.float32).reshape(-1)


def as_int_scalars(value: Any) -> Optional[np.ndarray]:
    array = np.asarray(value)
    if not np.issubdtype(array.dtype, np.integer) or array.size == 0:
        return None
    return np.array(array, copy=True).reshape(-1)


def decode_main_output(outputs: Mapping[str, Any]) -> MainModelOutput:
    """
    Decode raw engine outputs into a ``MainModelOutput``.

    Raises:
        InferenceFailed: if predictions, chunk lengths or chunk embeddings are missing.
    """
    predictions = first_output(outputs, PREDICTIONS_OUTPUTS, (as_float32,))
    chunk_lengths = first_output(outputs, CHUNK_LENGTHS_OUTPUTS, (as_int_scalars,))
    if predictions is None or chunk_lengths is None:
        raise InferenceFailed("missing required output")

    # fp32 first, then whatever float width the head was compiled with
    chunk_embeddings = first_output(outputs, CHUNK_EMBEDDINGS_OUTPUTS, (as_float32, upcast_to_float32))
    if chunk_embeddings is None:
        raise InferenceFailed("missing chunk embeddings")

    return MainModelOutput(
        predictions=predictions,
        chunk_embeddings=chunk_embeddings,
        chunk_length=int(chunk_lengths[0]),
    )


def run_main_model(engine: InferenceEngine, inputs: Dict[str, np.ndarray]) -> MainModelOutput:
    """Invoke ``engine`` once with the staged inputs and decode the result."""
    try:
        outputs = engine.predict(inputs)
    except SortformerError:
        raise
    except Exception as e:
        raise InferenceFailed(f"Main model prediction failed: {e}") from e

    if outputs is None:
        raise InferenceFailed("Main model returned no outputs")
    return decode_main_output(outputs)
