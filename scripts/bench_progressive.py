import argparse
import asyncio
import json
import logging
import time
from pathlib import Path

import torch
import torch.nn as nn

from progstream import ProgressiveLoader, convert, export_sequential
from progstream.baseline import progressive_rmse, uniform_rmse
from progstream.converter import parse_interface


def build_mlp(hidden_dim: int, layers: int) -> nn.Sequential:
    modules = [nn.Linear(784, hidden_dim), nn.ReLU()]
    for _ in range(layers):
        modules += [nn.Linear(hidden_dim, hidden_dim), nn.ReLU()]
    modules.append(nn.Linear(hidden_dim, 10))
    return nn.Sequential(*modules).eval()


async def time_drive(model_dir: str, concurrent: bool, x: torch.Tensor) -> float:
    loader = ProgressiveLoader(model_dir, concurrent=concurrent)
    await loader.init()
    t0 = time.perf_counter()
    await loader.drive(lambda model, is_last, step: model.predict(x))
    await loader.wait_pending_callbacks()
    return time.perf_counter() - t0


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--hidden-dim", type=int, default=256)
    parser.add_argument("--layers", type=int, default=4)
    parser.add_argument("--interface", type=str, default="4,4,8,16")
    parser.add_argument("--iters", type=int, default=3)
    parser.add_argument("--outdir", type=str, default="artifacts")
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING)
    torch.manual_seed(0)
    interface = parse_interface(args.interface)
    seq = build_mlp(args.hidden_dim, args.layers)
    model_json, weights = export_sequential(seq, (784,))

    model_dir = Path(args.outdir) / "bench_mlp"
    manifest = convert(model_json, weights, str(model_dir), interface)

    # Precision: RMSE per level vs uniform quantization at the same bit count
    bits = [sum(interface[:i + 1]) for i in range(len(interface))]
    rmse_levels = progressive_rmse(weights, interface)
    rmse_uniform = {b: uniform_rmse(weights, b) for b in (4, 8, 16)}

    # Latency: sequential vs pipelined drive over local files
    x = torch.randn(64, 784)
    timings = {}
    for mode, concurrent in (("sequential", False), ("pipelined", True)):
        runs = [asyncio.run(time_drive(str(model_dir), concurrent, x)) for _ in range(args.iters)]
        timings[mode] = sum(runs) / len(runs)

    results = {
        "config": vars(args),
        "partition_bytes": [manifest.partition_size(i) for i in range(manifest.num_levels)],
        "bits_per_level": bits,
        "rmse_progressive": rmse_levels,
        "rmse_uniform": {str(b): v for b, v in rmse_uniform.items()},
        "timing_s_per_drive": timings,
    }
    out_path = Path(args.outdir) / "bench_progressive_results.json"
    out_path.write_text(json.dumps(results, indent=2))
    print(json.dumps(results, indent=2))


if __name__ == "__main__":
    main()
