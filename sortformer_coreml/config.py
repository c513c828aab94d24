from dataclasses import dataclass, fields, replace
from typing import Tuple


@dataclass(frozen=True)
class SortformerConfig:
    chunk_len: int = 6  # Core diarization frames per chunk
    chunk_right_context: int = 7
    chunk_left_context: int = 1
    fifo_len: int = 40
    spkcache_len: int = 188
    spkcache_update_period: int = 31

    # Model dimensions (fixed at export time)
    mel_features: int = 128
    pre_encoder_dims: int = 512
    num_speakers: int = 4

    # do not touch these
    subsampling_factor: int = 8
    sample_rate: int = 16000
    mel_window: int = 400
    mel_stride: int = 160
    frame_duration: float = 0.08

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "frame_duration":
                if value <= 0:
                    raise ValueError(f"frame_duration must be positive, got {value}")
                continue
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"{f.name} must be an integer, got {value!r}")
            minimum = 0 if f.name in ("chunk_left_context", "chunk_right_context") else 1
            if value < minimum:
                raise ValueError(f"{f.name} must be >= {minimum}, got {value}")

    @classmethod
    def default(cls) -> "SortformerConfig":
        return cls()

    @classmethod
    def low_latency(cls) -> "SortformerConfig":
        # Matches the low latency CoreML export (56 mel frames per chunk)
        return cls(
            chunk_len=4,
            chunk_right_context=1,
            chunk_left_context=2,
            fifo_len=63,
            spkcache_len=63,
            spkcache_update_period=50,
        )

    def with_overrides(self, **kwargs) -> "SortformerConfig":
        return replace(self, **kwargs)

    # Full chunk size for model input (includes context)
    @property
    def chunk_mel_frames(self) -> int:
        return (self.chunk_len + self.chunk_right_context + self.chunk_left_context) * self.subsampling_factor

    # CoreML preprocessor input size for one chunk
    @property
    def coreml_audio_samples(self) -> int:
        return (self.chunk_mel_frames - 1) * self.mel_stride + self.mel_window

    # New mel frames per preprocessor call
    @property
    def preproc_feature_frames(self) -> int:
        return self.chunk_len * self.subsampling_factor

    @property
    def preproc_audio_hop(self) -> int:
        return self.preproc_feature_frames * self.mel_stride

    @property
    def chunk_shape(self) -> Tuple[int, int, int]:
        return (1, self.chunk_mel_frames, self.mel_features)

    @property
    def fifo_shape(self) -> Tuple[int, int, int]:
        return (1, self.fifo_len, self.pre_encoder_dims)

    @property
    def spkcache_shape(self) -> Tuple[int, int, int]:
        return (1, self.spkcache_len, self.pre_encoder_dims)

    @property
    def prediction_frames(self) -> int:
        """Upper bound on prediction rows: speaker cache + FIFO + subsampled chunk."""
        chunk_frames = self.chunk_len + self.chunk_left_context + self.chunk_right_context
        return self.spkcache_len + self.fifo_len + chunk_frames
