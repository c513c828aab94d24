"""
Inference engines the main model adapter can call.

An engine is anything with ``predict(inputs) -> outputs`` over named numpy
arrays, which is exactly the interface of ``coremltools.models.MLModel``.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Protocol, Sequence, runtime_checkable

import coremltools as ct
import numpy as np
import torch
from torch import nn

# Input names of the exported streaming model, in forward() argument order
MAIN_MODEL_INPUTS = ("chunk", "chunk_lengths", "spkcache", "spkcache_lengths", "fifo", "fifo_lengths")

# Output names used by SortformerHeadWrapper / SortformerCoreMLWrapper exports
MAIN_MODEL_OUTPUTS = ("speaker_preds", "chunk_pre_encoder_embs_out", "chunk_pre_encoder_lengths_out")


@runtime_checkable
class InferenceEngine(Protocol):
    def predict(self, inputs: Dict[str, np.ndarray]) -> Dict[str, Any]:
        ...


class CoreMLEngine:
    """Runs a loaded CoreML model (``MLModel`` or ``CompiledMLModel``)."""

    def __init__(self, model):
        self.model = model

    @property
    def compute_unit(self) -> Optional[ct.ComputeUnit]:
        return getattr(self.model, "compute_unit", None)

    def predict(self, inputs: Dict[str, np.ndarray]) -> Dict[str, Any]:
        return self.model.predict(inputs)

    def __repr__(self):
        return f"CoreMLEngine(compute_unit={self.compute_unit})"


class TorchModuleEngine:
    """
    Runs a PyTorch module with the same named-tensor contract as the CoreML model.

    The module's forward() receives the inputs positionally in ``input_names``
    order, like the traced wrappers passed to ``ct.convert``. Its returned
    tuple is named by ``output_names``. Inputs are wrapped with
    ``torch.from_numpy`` without copying.
    """

    def __init__(
            self,
            module: nn.Module,
            input_names: Sequence[str] = MAIN_MODEL_INPUTS,
            output_names: Sequence[str] = MAIN_MODEL_OUTPUTS,
    ):
        self.module = module
        self.module.eval()
        self.input_names = tuple(input_names)
        self.output_names = tuple(output_names)

    @classmethod
    def from_traced(cls, path: str, **kwargs) -> "TorchModuleEngine":
        return cls(torch.jit.load(path, map_location="cpu"), **kwargs)

    def predict(self, inputs: Dict[str, np.ndarray]) -> Dict[str, Any]:
        args = [torch.from_numpy(np.asarray(inputs[name])) for name in self.input_names]
        with torch.no_grad():
            result = self.module(*args)

        if isinstance(result, torch.Tensor):
            result = (result,)
        if len(result) != len(self.output_names):
            raise ValueError(
                f"Module returned {len(result)} outputs, expected {len(self.output_names)} {self.output_names}"
            )
        return {name: tensor.detach().cpu().numpy() for name, tensor in zip(self.output_names, result)}

    def __repr__(self):
        return f"TorchModuleEngine({type(self.module).__name__})"
