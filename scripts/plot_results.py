import argparse
import json
from pathlib import Path

import matplotlib.pyplot as plt


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--results", type=str, default="artifacts/bench_progressive_results.json")
    parser.add_argument("--out", type=str, default="artifacts/plots")
    args = parser.parse_args()

    data = json.loads(Path(args.results).read_text())
    bits = data["bits_per_level"]
    rmse = data["rmse_progressive"]
    uniform = {int(b): v for b, v in data["rmse_uniform"].items()}

    Path(args.out).mkdir(parents=True, exist_ok=True)

    # RMSE vs cumulative bits, uniform baselines as reference points
    plt.figure()
    plt.plot(bits, rmse, marker="o", label="progressive")
    plt.scatter(list(uniform), list(uniform.values()), color="red", label="uniform")
    plt.yscale("log")
    plt.xlabel("Cumulative bits")
    plt.ylabel("Weight RMSE")
    plt.title("Precision per loaded level")
    plt.legend()
    plt.grid(True, alpha=0.3)
    out_path = Path(args.out) / "rmse_per_level.png"
    plt.savefig(str(out_path), dpi=200, bbox_inches="tight")
    print(f"Saved {out_path}")


if __name__ == "__main__":
    main()
