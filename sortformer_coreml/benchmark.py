#!/usr/bin/env python3
"""Benchmark the streaming main model call across CoreML compute units."""

from __future__ import annotations

import argparse
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import coremltools as ct
import numpy as np

from .config import SortformerConfig
from .errors import SortformerError
from .loading import load_local_model, load_remote_model, parse_compute_units
from .models import SortformerModels

logger = logging.getLogger(__name__)

WARMUP_RUNS = 2

PRESETS = {
    "default": SortformerConfig.default,
    "low_latency": SortformerConfig.low_latency,
}


@dataclass
class ChunkInputs:
    chunk: np.ndarray
    chunk_length: int
    spkcache: np.ndarray
    spkcache_length: int
    fifo: np.ndarray
    fifo_length: int


@dataclass
class BenchmarkResult:
    load_time: float
    latency_mean: float
    latency_p95: float
    metrics: Optional[Dict[str, float]] = None


def prediction_drift(reference: List[np.ndarray], candidate: List[np.ndarray]) -> Dict[str, float]:
    """
    Per-chunk disagreement between two runs over the same inputs.

    Reports the overall MSE, the largest absolute difference, the chunk it
    occurred in and the mean of the per-chunk maxima.
    """
    if len(reference) != len(candidate) or not reference:
        raise ValueError(f"Cannot compare {len(reference)} reference chunks with {len(candidate)} candidate chunks")

    squared = 0.0
    count = 0
    chunk_max = []
    for ref, cand in zip(reference, candidate):
        if ref.shape != cand.shape:
            raise ValueError(f"Chunk shape mismatch {ref.shape} vs {cand.shape}")
        diff = cand.astype(np.float64) - ref
        squared += float(np.sum(diff**2))
        count += diff.size
        chunk_max.append(float(np.max(np.abs(diff))) if diff.size else 0.0)

    worst = int(np.argmax(chunk_max))
    return {
        "mse": squared / count if count else 0.0,
        "max_abs": chunk_max[worst],
        "worst_chunk": worst,
        "mean_chunk_max": float(np.mean(chunk_max)),
    }


def random_chunk_inputs(config: SortformerConfig, num_chunks: int, seed: int = 0) -> List[ChunkInputs]:
    """Synthetic inputs with growing FIFO / speaker cache fill levels."""
    rng = np.random.default_rng(seed)
    inputs = []
    for i in range(num_chunks):
        fifo_length = min(i * config.chunk_len, config.fifo_len)
        spkcache_length = min(max(0, i * config.chunk_len - config.fifo_len), config.spkcache_len)
        inputs.append(ChunkInputs(
            chunk=rng.standard_normal((config.chunk_mel_frames, config.mel_features), dtype=np.float32),
            chunk_length=config.chunk_mel_frames,
            spkcache=rng.standard_normal((spkcache_length, config.pre_encoder_dims), dtype=np.float32),
            spkcache_length=spkcache_length,
            fifo=rng.standard_normal((fifo_length, config.pre_encoder_dims), dtype=np.float32),
            fifo_length=fifo_length,
        ))
    return inputs


def run_chunk(models: SortformerModels, inp: ChunkInputs):
    return models.run_main_model(
        inp.chunk, inp.chunk_length,
        inp.spkcache, inp.spkcache_length,
        inp.fifo, inp.fifo_length,
    )


def benchmark_models(models: SortformerModels, inputs: List[ChunkInputs], warmup: int = WARMUP_RUNS):
    """Returns (latencies in seconds, predictions per chunk)."""
    if inputs:
        for _ in range(warmup):
            run_chunk(models, inputs[0])

    latencies = []
    predictions = []
    for inp in inputs:
        t0 = time.perf_counter()
        out = run_chunk(models, inp)
        latencies.append(time.perf_counter() - t0)
        predictions.append(out.predictions)
    return latencies, predictions


def summarize(load_time: float, latencies: List[float]) -> BenchmarkResult:
    return BenchmarkResult(
        load_time=load_time,
        latency_mean=float(np.mean(latencies)) if latencies else float("nan"),
        latency_p95=float(np.percentile(latencies, 95)) if latencies else float("nan"),
    )


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__)
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--model-path", type=Path, help="Local .mlpackage or .mlmodelc")
    source.add_argument("--remote", action="store_true", help="Download the bundle for --preset from Hugging Face")
    parser.add_argument("--cache-dir", type=Path, default=None)
    parser.add_argument("--preset", choices=sorted(PRESETS), default="default")
    parser.add_argument("--runs", type=int, default=20)
    parser.add_argument("--warmup", type=int, default=WARMUP_RUNS)
    parser.add_argument("--compute-units", action="append", type=parse_compute_units,
                        help="Repeatable; defaults to CPU_ONLY and ALL")
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = PRESETS[args.preset]()
    compute_units = args.compute_units or [ct.ComputeUnit.CPU_ONLY, ct.ComputeUnit.ALL]
    inputs = random_chunk_inputs(config, args.runs, seed=args.seed)

    results: Dict[str, BenchmarkResult] = {}
    reference = None
    for cu in compute_units:
        try:
            if args.remote:
                handle = load_remote_model(config, cache_directory=args.cache_dir, compute_units=cu)
            else:
                handle = load_local_model(args.model_path, compute_units=cu)
            models = SortformerModels(config, handle.engine, compilation_duration=handle.compilation_duration)
            latencies, predictions = benchmark_models(models, inputs, warmup=args.warmup)
        except SortformerError as e:
            logger.error(f"Failed on {cu.name}: {e}")
            continue

        result = summarize(handle.compilation_duration, latencies)
        if reference is None:
            reference = predictions
        elif predictions:
            result.metrics = prediction_drift(reference, predictions)
        results[cu.name] = result

        line = (f"{cu.name:<12} load {result.load_time:.2f}s  "
                f"mean {result.latency_mean * 1000:.2f}ms  p95 {result.latency_p95 * 1000:.2f}ms")
        if result.metrics:
            line += f"  MSE {result.metrics['mse']:.6f}  max|d| {result.metrics['max_abs']:.6f} (chunk {result.metrics['worst_chunk']})"
        print(line)

    if not results:
        parser.exit(1, "No compute unit could run the model.\n")
    return results


if __name__ == "__main__":
    main()
