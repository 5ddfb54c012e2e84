import argparse
import csv
import io
import json
import time
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd

from Stones import (
    BACKENDS,
    HistogramPropagator,
    StoneStateMachine,
    build_histogram,
    count_digits,
    parse_values,
    total_stones,
)

# --- ANALYSIS HELPERS ---

def digit_distribution(histogram: Dict[int, int]) -> pd.DataFrame:
    """
    Groups a histogram by the decimal length of its values.

    Even-length groups are the stones that split on the next blink, so the
    "Stones" column of the even rows is exactly how many stones the next
    round adds.

    Args:
        histogram (dict): Mapping of stone value to count.

    Returns:
        pd.DataFrame: One row per digit length with columns
                      (Digits, DistinctValues, Stones, Stones_Pct, Splits).
    """
    columns = ["Digits", "DistinctValues", "Stones", "Stones_Pct", "Splits"]
    if not histogram:
        return pd.DataFrame(columns=columns)

    distinct_by_digits = {}
    stones_by_digits = {}
    for value, count in histogram.items():
        digits = count_digits(value)
        distinct_by_digits[digits] = distinct_by_digits.get(digits, 0) + 1
        stones_by_digits[digits] = stones_by_digits.get(digits, 0) + int(count)

    digit_lengths = sorted(distinct_by_digits)
    result = pd.DataFrame({
        "Digits": digit_lengths,
        "DistinctValues": [distinct_by_digits[d] for d in digit_lengths],
        # object dtype keeps counts exact beyond int64
        "Stones": pd.Series([stones_by_digits[d] for d in digit_lengths], dtype=object),
    })

    total = total_stones(histogram)
    result["Stones_Pct"] = [int(stones) / total * 100 for stones in result["Stones"]]
    result["Splits"] = result["Digits"] % 2 == 0
    return result[columns]


def _parse_steps(study: str) -> List[int]:
    steps = sorted({int(x) for x in study.split(",") if x.strip()})
    if not steps:
        raise ValueError("study requires at least one iteration count")
    if steps[0] < 0:
        raise ValueError("iteration counts must be non-negative")
    return steps


def run_growth_study(values: Sequence[int], steps: Sequence[int], backend: str = "python", engine: StoneStateMachine = None) -> Tuple[List[dict], float]:
    """
    Propagates once up to the largest requested step and snapshots the
    histogram statistics at every requested step along the way.

    Args:
        values (sequence): Initial stone values.
        steps (sequence): Iteration counts to report, in any order.
        backend (str): Transition backend used when `engine` is None.
        engine (StoneStateMachine, optional): Engine to reuse. A shared engine
                                              keeps its memo between calls.

    Returns:
        tuple: (rows, elapsed_sec) where each row describes one step.
    """
    if engine is None:
        engine = StoneStateMachine(backend=backend)
    wanted = set(steps)
    if not wanted:
        raise ValueError("steps must not be empty")

    propagator = HistogramPropagator(engine)
    histogram = build_histogram(values)
    rows = []
    start = time.time()

    if 0 in wanted:
        rows.append(_snapshot_row(0, histogram, engine, start))
    for round_no in range(1, max(wanted) + 1):
        histogram = propagator.step(histogram)
        if round_no in wanted:
            rows.append(_snapshot_row(round_no, histogram, engine, start))

    return rows, time.time() - start


def _snapshot_row(round_no, histogram, engine, start):
    return {
        "Iterations": round_no,
        "TotalStones": total_stones(histogram),
        "DistinctValues": len(histogram),
        "MemoSize": len(engine),
        "ElapsedSec": time.time() - start,
    }


def _print_study_progress(rep: int, reps: int, elapsed: float) -> None:
    pct = rep / reps * 100
    print(f"\rStudy progress: {pct:5.1f}% | rep {rep}/{reps} | {elapsed:.3f}s ", end="", flush=True)

# --- MAIN EXECUTION ---

def run_suite(args: argparse.Namespace) -> None:
    """
    Main entry point to run the stone suite based on command-line arguments.

    1. Distribution Analysis: propagates for `--n` rounds and saves the digit
       length distribution of the final histogram.
    2. Growth Study: propagates to several iteration counts, repeated with a
       cold engine and with a warm (memo-sharing) engine to compare timing.
    """
    if args.values:
        values = parse_values(io.StringIO(args.values))
    else:
        values = parse_values(args.input)

    out_dir = Path(args.output)
    out_dir.mkdir(parents=True, exist_ok=True)
    ts = int(time.time())

    # Mode 1: Distribution Analysis
    if args.n is not None:
        print(f"\n=== MODE 1: DIGIT DISTRIBUTION ({args.n:,} rounds) ===")
        start_t = time.time()
        engine = StoneStateMachine(backend=args.backend)
        histogram = HistogramPropagator(engine).run(build_histogram(values), args.n)
        dist = digit_distribution(histogram)
        dist.to_csv(out_dir / f"dist_digits_{ts}.csv", index=False)

        elapsed_tot = time.time() - start_t
        meta = {
            "mode": "distribution",
            "iterations": args.n,
            "backend": engine.backend,
            "total_stones": total_stones(histogram),
            "distinct_values": len(histogram),
            "memo_size": len(engine),
            "elapsed_sec": elapsed_tot,
        }
        with open(out_dir / f"meta_dist_{ts}.json", "w") as f:
            json.dump(meta, f, indent=2)
        print(f"Done! Data saved to {out_dir}")

    # Mode 2: Growth Study
    if args.study:
        steps = _parse_steps(args.study)
        reps = args.reps
        print(f"\n=== MODE 2: GROWTH STUDY ({len(steps)} steps, {reps} reps) ===")
        results = []
        timing_data = {"cold": [], "warm": []}
        warm_engine = StoneStateMachine(backend=args.backend)
        start_t_study = time.time()

        for r in range(reps):
            cold_rows, cold_elapsed = run_growth_study(values, steps, backend=args.backend)
            warm_rows, warm_elapsed = run_growth_study(values, steps, engine=warm_engine)
            timing_data["cold"].append(cold_elapsed)
            timing_data["warm"].append(warm_elapsed)

            for cold, warm in zip(cold_rows, warm_rows):
                if cold["TotalStones"] != warm["TotalStones"]:
                    raise RuntimeError(
                        f"Warm and cold engines disagree at {cold['Iterations']} rounds: "
                        f"{warm['TotalStones']} != {cold['TotalStones']}"
                    )
                results.append({
                    "Repetition": r + 1,
                    "Iterations": cold["Iterations"],
                    "TotalStones": cold["TotalStones"],
                    "DistinctValues": cold["DistinctValues"],
                    "MemoSize": cold["MemoSize"],
                    "ColdElapsedSec": cold["ElapsedSec"],
                    "WarmElapsedSec": warm["ElapsedSec"],
                })
            _print_study_progress(r + 1, reps, time.time() - start_t_study)

        print("\nStudy complete. Saving data...")
        with open(out_dir / f"study_growth_{ts}.csv", "w", newline="") as f:
            fields = ["Repetition", "Iterations", "TotalStones", "DistinctValues", "MemoSize", "ColdElapsedSec", "WarmElapsedSec"]
            w = csv.DictWriter(f, fieldnames=fields)
            w.writeheader()
            w.writerows(results)

        meta_study = {
            "mode": "growth_study",
            "steps": steps,
            "reps": reps,
            "backend": warm_engine.backend,
            "warm_memo_size": len(warm_engine),
            "elapsed_sec": time.time() - start_t_study,
            "timing_stats": {
                label: {
                    "avg_sec": float(np.mean(samples)),
                    "min_sec": float(np.min(samples)),
                    "max_sec": float(np.max(samples)),
                }
                for label, samples in timing_data.items()
                if samples
            },
        }
        with open(out_dir / f"meta_study_{ts}.json", "w") as f:
            json.dump(meta_study, f, indent=2)
        print(f"Study saved to {out_dir}")


def _build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Stones Suite: growth and distribution studies")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--input", type=str, help="Text file with whitespace-separated stone values")
    source.add_argument("--values", type=str, help="Stone values given inline, e.g. \"125 17\"")
    parser.add_argument("--n", type=int, help="Number of rounds for the digit distribution analysis")
    parser.add_argument("--study", type=str, help="Comma-separated list of iteration counts")
    parser.add_argument("--reps", type=int, default=3, help="Repetitions in study mode")
    parser.add_argument("--backend", choices=list(BACKENDS), default="python", help="Transition backend")
    parser.add_argument("--output", type=str, default="results", help="Output directory")
    return parser


if __name__ == "__main__":
    parser = _build_argument_parser()
    args = parser.parse_args()

    if args.n is None and not args.study:
        parser.print_help()
    else:
        run_suite(args)
