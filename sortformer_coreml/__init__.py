from .buffers import AlignedBufferPool
from .config import SortformerConfig
from .engine import CoreMLEngine, InferenceEngine, TorchModuleEngine
from .errors import AllocationFailed, InferenceFailed, ModelLoadFailed, SortformerError
from .inference import MainModelOutput
from .loading import ModelHandle, bundle_for, load_local_model, load_remote_model
from .models import SortformerModels

__version__ = "0.1.0"

__all__ = [
    "AlignedBufferPool",
    "AllocationFailed",
    "CoreMLEngine",
    "InferenceEngine",
    "InferenceFailed",
    "MainModelOutput",
    "ModelHandle",
    "ModelLoadFailed",
    "SortformerConfig",
    "SortformerError",
    "SortformerModels",
    "TorchModuleEngine",
    "bundle_for",
    "load_local_model",
    "load_remote_model",
]
