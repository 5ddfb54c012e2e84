import argparse
import json
import os
import platform
import shutil
import sys
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

try:
    from numba import njit
    NUMBA_AVAILABLE = True
except Exception:  # NumPy/Numba incompatibility or missing package
    NUMBA_AVAILABLE = False
    njit = None  # type: ignore


## --- CONFIGURATION ---
debug = False

KERNEL_MULTIPLIER = 2024
DEFAULT_ITERATIONS = 25
BACKENDS = ("auto", "python", "numba")

INT64_MAX = int(np.iinfo(np.int64).max)
# Largest value the int64 kernel can multiply without wrapping.
KERNEL_VALUE_LIMIT = INT64_MAX // KERNEL_MULTIPLIER


## --- HELPERS ---

def _format_duration(seconds):
    seconds_int = max(0, int(round(float(seconds))))
    hours, remainder = divmod(seconds_int, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


def _format_elapsed(seconds):
    seconds_float = max(0.0, float(seconds))
    if seconds_float < 0.001:
        return "0ms"
    if seconds_float < 1.0:
        return f"{seconds_float * 1000:.0f}ms"
    if seconds_float < 60.0:
        return f"{seconds_float:.2f}s"
    return _format_duration(seconds_float)


def _format_progress_message(round_no, num_iterations, total, distinct, round_elapsed):
    percent_complete = round_no / num_iterations * 100.0 if num_iterations else 100.0
    return (
        f"Round {round_no:,}/{num_iterations:,} ({percent_complete:.1f}%) | "
        f"{total:,} stones across {distinct:,} values | {_format_elapsed(round_elapsed)}"
    )


def _cleanup_pycache(root_directory):
    """Remove __pycache__ directories under root_directory."""
    for dirpath, dirnames, _ in os.walk(root_directory):
        if "__pycache__" in dirnames:
            pycache_path = os.path.join(dirpath, "__pycache__")
            shutil.rmtree(pycache_path, ignore_errors=True)


def _resolve_backend(backend):
    backend_normalized = backend.lower()
    if backend_normalized not in BACKENDS:
        raise ValueError("backend must be one of 'auto', 'python', or 'numba'")
    if backend_normalized == "auto":
        return "numba" if NUMBA_AVAILABLE else "python"
    if backend_normalized == "numba" and not NUMBA_AVAILABLE:
        raise RuntimeError("Numba backend requested but numba is not available.")
    return backend_normalized


## --- TRANSITION RULES ---

@dataclass(frozen=True)
class Transition:
    """Successors of a single stone. `secondary` is None unless the stone splits."""
    primary: int
    secondary: Optional[int] = None

    @property
    def successors(self):
        if self.secondary is None:
            return (self.primary,)
        return (self.primary, self.secondary)


def count_digits(value):
    return len(str(value))


def compute_transition(value):
    """Apply the rewrite rules to one value.

    0 becomes 1; a value with an even number of digits splits into its left
    and right halves; anything else is multiplied by 2024.
    """
    if value == 0:
        return Transition(1)

    digits = count_digits(value)
    if digits % 2 == 0:
        left, right = divmod(value, 10 ** (digits // 2))
        return Transition(left, right)

    return Transition(value * KERNEL_MULTIPLIER)


if NUMBA_AVAILABLE:

    @njit(cache=True)
    def _transition_batch_numba(values, primary, secondary, has_secondary):
        for i in range(values.shape[0]):
            value = values[i]
            if value == 0:
                primary[i] = 1
                has_secondary[i] = False
                continue

            digits = 0
            remaining = value
            while remaining > 0:
                digits += 1
                remaining //= 10

            if digits % 2 == 0:
                divisor = np.int64(1)
                for _ in range(digits // 2):
                    divisor *= 10
                primary[i] = value // divisor
                secondary[i] = value % divisor
                has_secondary[i] = True
            else:
                primary[i] = value * 2024
                has_secondary[i] = False


def _compute_transitions_numba(values):
    if not NUMBA_AVAILABLE:
        raise RuntimeError("Numba backend requested but numba is not available.")

    values_array = np.asarray(values, dtype=np.int64)
    primary = np.empty(values_array.size, dtype=np.int64)
    secondary = np.zeros(values_array.size, dtype=np.int64)
    has_secondary = np.empty(values_array.size, dtype=np.bool_)
    _transition_batch_numba(values_array, primary, secondary, has_secondary)

    transitions = []
    for idx in range(values_array.size):
        if has_secondary[idx]:
            transitions.append(Transition(int(primary[idx]), int(secondary[idx])))
        else:
            transitions.append(Transition(int(primary[idx])))
    return transitions


class StoneStateMachine:
    """Memoized transition engine.

    Every value seen is computed once and cached for the life of the
    instance. The cache only grows.
    """

    def __init__(self, backend="python"):
        self.backend = _resolve_backend(backend)
        self._transitions = {}

    def __len__(self):
        return len(self._transitions)

    def __contains__(self, value):
        return value in self._transitions

    def get_transition(self, value):
        transition = self._transitions.get(value)
        if transition is None:
            transition = compute_transition(value)
            self._transitions[value] = transition
        return transition

    def prime(self, values):
        """Fill the cache for every unseen value in `values`. Returns the number added."""
        unseen = [value for value in dict.fromkeys(values) if value not in self._transitions]
        if not unseen:
            return 0

        if self.backend == "numba":
            kernel_values = [value for value in unseen if value <= KERNEL_VALUE_LIMIT]
            if kernel_values:
                for value, transition in zip(kernel_values, _compute_transitions_numba(kernel_values)):
                    self._transitions[value] = transition
            for value in unseen:
                if value > KERNEL_VALUE_LIMIT:
                    self._transitions[value] = compute_transition(value)
        else:
            for value in unseen:
                self._transitions[value] = compute_transition(value)

        return len(unseen)


## --- HISTOGRAM PROPAGATION ---

def total_stones(histogram):
    # Python ints, so totals past uint64 stay exact.
    return sum(int(count) for count in histogram.values())


class _RoundAccumulator:
    """Collect per-round statistics without keeping the histograms themselves."""

    def __init__(self):
        self.rounds = []
        self.distinct_values = []
        self.totals = []
        self.new_transitions = []
        self.memo_sizes = []
        self.elapsed_ms = []

    def update(self, round_no, histogram, new_transitions, memo_size, elapsed_ms):
        self.rounds.append(int(round_no))
        self.distinct_values.append(len(histogram))
        self.totals.append(total_stones(histogram))
        self.new_transitions.append(int(new_transitions))
        self.memo_sizes.append(int(memo_size))
        self.elapsed_ms.append(float(elapsed_ms))

    def __len__(self):
        return len(self.rounds)

    def to_frame(self):
        return pd.DataFrame({
            "Round": self.rounds,
            "DistinctValues": self.distinct_values,
            "TotalStones": self.totals,
            "NewTransitions": self.new_transitions,
            "MemoSize": self.memo_sizes,
            "ElapsedMs": self.elapsed_ms,
        })


class HistogramPropagator:
    def __init__(self, engine=None, show_progress=False):
        self.engine = engine if engine is not None else StoneStateMachine()
        self.show_progress = show_progress

    def step(self, histogram):
        """Apply one round to `histogram` and return the new histogram."""
        self.engine.prime(histogram)

        next_histogram = {}
        for value, count in histogram.items():
            count = int(count)
            transition = self.engine.get_transition(value)
            next_histogram[transition.primary] = next_histogram.get(transition.primary, 0) + count
            if transition.secondary is not None:
                next_histogram[transition.secondary] = next_histogram.get(transition.secondary, 0) + count
        return next_histogram

    def run(self, initial_histogram, num_iterations, accumulator=None):
        if num_iterations < 0:
            raise ValueError("num_iterations must be a non-negative integer")

        current = dict(initial_histogram)
        if accumulator is not None:
            accumulator.update(0, current, 0, len(self.engine), 0.0)

        for round_no in range(1, num_iterations + 1):
            memo_before = len(self.engine)
            round_start = time.time()
            current = self.step(current)
            round_elapsed = time.time() - round_start
            new_transitions = len(self.engine) - memo_before

            if accumulator is not None:
                accumulator.update(round_no, current, new_transitions, len(self.engine), round_elapsed * 1000.0)

            if debug:
                print(f"Round {round_no} | values={len(current)} | new transitions={new_transitions}")
            if self.show_progress:
                print(
                    _format_progress_message(
                        round_no, num_iterations, total_stones(current), len(current), round_elapsed
                    ),
                    flush=True,
                )

        return current


## --- INPUT / OUTPUT ---

def parse_values(source):
    """Read whitespace-delimited stone values from a path or a text stream."""
    if hasattr(source, "read"):
        text = source.read()
    else:
        with open(source, "r", encoding="utf-8") as input_file:
            text = input_file.read()

    values = []
    for token in text.split():
        try:
            value = int(token)
        except ValueError as exc:
            raise ValueError(f"Expected a non-negative integer, got {token!r}") from exc
        if value < 0 or value > INT64_MAX:
            raise ValueError(f"Stone value out of range: {token!r}")
        values.append(value)
    return values


def build_histogram(values):
    return dict(Counter(values))


def render(histogram, total, title="~~END HISTOGRAM~~", stream=None):
    out = stream if stream is not None else sys.stdout
    print(title, file=out)
    for value, count in histogram.items():
        print(f"{{{value}, {count}}}", file=out)
    print("~~Total Count~~", file=out)
    print(total, file=out)


def _save_histogram(histogram, csv_path):
    values = sorted(histogram)
    df = pd.DataFrame({
        "Value": values,
        "Count": [int(histogram[value]) for value in values],
    })
    df.to_csv(csv_path, index=False)
    return csv_path


def _plot_growth(trace_df, iterations):
    fig, (ax_total, ax_distinct) = plt.subplots(1, 2, figsize=(12, 4))

    ax_total.plot(trace_df["Round"], trace_df["TotalStones"].astype(float), marker="o", markersize=3)
    ax_total.set_yscale("log")
    ax_total.set_title(f"Total stones per round ({iterations} rounds)")
    ax_total.set_xlabel("Round")
    ax_total.set_ylabel("Stones")
    ax_total.grid(alpha=0.3)

    ax_distinct.plot(trace_df["Round"], trace_df["DistinctValues"], marker="o", markersize=3, color="tab:orange")
    ax_distinct.plot(trace_df["Round"], trace_df["MemoSize"], linestyle="--", color="tab:green", label="Memo size")
    ax_distinct.set_title("Distinct values per round")
    ax_distinct.set_xlabel("Round")
    ax_distinct.set_ylabel("Values")
    ax_distinct.legend()
    ax_distinct.grid(alpha=0.3)

    fig.tight_layout()
    return fig


## --- MAIN DRIVER ---

@dataclass(frozen=True)
class BlinkSummary:
    iterations: int
    backend: str
    initial_total: int
    total: int
    distinct_values: int
    memo_size: int
    elapsed_ms: float
    histogram: dict = field(repr=False)
    trace: pd.DataFrame = field(repr=False)
    run_dir: Optional[Path] = None


def SimulateBlinks(
    iterations=DEFAULT_ITERATIONS,
    values=None,
    input_path=None,
    backend="auto",
    engine=None,
    output_dir="results",
    save_plots=True,
    show_plots=False,
    save_run_metadata=True,
    print_histograms=True,
    show_progress=True,
):
    if iterations < 0:
        raise ValueError("iterations must be a non-negative integer")
    if values is None and input_path is None:
        raise ValueError("either values or input_path must be provided")

    if values is None:
        values = parse_values(input_path)
    if engine is None:
        engine = StoneStateMachine(backend=backend)

    initial_histogram = build_histogram(values)
    initial_total = total_stones(initial_histogram)
    if print_histograms:
        render(initial_histogram, initial_total, title="~~INITIAL HISTOGRAM~~")

    accumulator = _RoundAccumulator()
    propagator = HistogramPropagator(engine, show_progress=show_progress)

    start_time = time.time()
    run_start_unix = int(start_time)
    final_histogram = propagator.run(initial_histogram, iterations, accumulator=accumulator)
    elapsed_ms = (time.time() - start_time) * 1000.0

    total = total_stones(final_histogram)
    if print_histograms:
        render(final_histogram, total)

    print(f"\n--- RESULTS ({iterations} rounds, backend={engine.backend}) ---")
    print(f"Time: {_format_elapsed(elapsed_ms / 1000.0)}")
    print(f"Stones: {initial_total:,} -> {total:,}")
    print(f"Distinct values: {len(final_histogram):,} | Memo size: {len(engine):,}")

    trace_df = accumulator.to_frame()

    run_dir = None
    if output_dir:
        run_basename = f"stones_{iterations}_{run_start_unix}"
        run_dir = Path(output_dir) / run_basename
        run_dir.mkdir(parents=True, exist_ok=True)

        histogram_path = _save_histogram(final_histogram, run_dir / f"{run_basename}_histogram.csv")
        print(f"Saved final histogram to: {histogram_path}")

        rounds_path = run_dir / f"{run_basename}_rounds.csv"
        trace_df.to_csv(rounds_path, index=False)
        print(f"Saved per-round trace to: {rounds_path}")

        saved_plot_paths = []
        fig = _plot_growth(trace_df, iterations)
        if save_plots:
            growth_plot_path = run_dir / f"{run_basename}_growth.png"
            fig.savefig(growth_plot_path, dpi=150)
            saved_plot_paths.append(growth_plot_path)
            print(f"Saved growth plot to: {growth_plot_path}")
        if show_plots:
            plt.show()
        else:
            plt.close(fig)

        if save_run_metadata:
            system_info = platform.uname()
            metadata_path = run_dir / f"{run_basename}_metadata.json"
            metadata = {
                "run": {
                    "iterations": int(iterations),
                    "backend_requested": backend,
                    "backend_used": engine.backend,
                    "input_path": str(input_path) if input_path is not None else None,
                    "initial_values": len(values),
                    "initial_total": initial_total,
                    "total": total,
                    "distinct_values": len(final_histogram),
                    "memo_size": len(engine),
                    "output_directory": str(run_dir),
                    "run_timestamp_unix": run_start_unix,
                },
                "timing": {
                    "started_at_utc": datetime.fromtimestamp(
                        start_time, tz=timezone.utc
                    ).isoformat(timespec="seconds").replace("+00:00", "Z"),
                    "elapsed_ms": elapsed_ms,
                    "elapsed_seconds": elapsed_ms / 1000.0,
                },
                "system": {
                    "platform": system_info.system,
                    "platform_release": system_info.release,
                    "machine": system_info.machine,
                    "python_version": platform.python_version(),
                    "python_implementation": platform.python_implementation(),
                    "cpu_count": os.cpu_count(),
                    "numba_available": NUMBA_AVAILABLE,
                },
                "artifacts": {
                    "histogram_csv": str(histogram_path),
                    "rounds_csv": str(rounds_path),
                    "plots": [str(path) for path in saved_plot_paths],
                },
            }
            with metadata_path.open("w", encoding="utf-8") as metadata_file:
                json.dump(metadata, metadata_file, indent=2)
            print(f"Saved metadata to: {metadata_path}")

        print(f"Artifacts saved under: {run_dir}")

    return BlinkSummary(
        iterations=int(iterations),
        backend=engine.backend,
        initial_total=initial_total,
        total=total,
        distinct_values=len(final_histogram),
        memo_size=len(engine),
        elapsed_ms=elapsed_ms,
        histogram=final_histogram,
        trace=trace_df,
        run_dir=run_dir,
    )


def _parse_non_negative_int(value):
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected a non-negative integer, got {value!r}") from exc
    if parsed < 0:
        raise argparse.ArgumentTypeError(f"Expected a non-negative integer, got {value!r}")
    return parsed


def _build_argument_parser():
    parser = argparse.ArgumentParser(
        description="Count stones after a number of blinks and export the resulting histogram."
    )
    parser.add_argument("input", help="Text file with whitespace-separated stone values.")
    parser.add_argument(
        "iterations",
        type=_parse_non_negative_int,
        nargs="?",
        default=DEFAULT_ITERATIONS,
        help=f"Number of blinks to simulate (default: {DEFAULT_ITERATIONS}).",
    )
    parser.add_argument(
        "--backend",
        choices=list(BACKENDS),
        default="auto",
        help="Transition backend to use (default: auto).",
    )
    parser.add_argument(
        "--output-dir",
        default="results",
        help="Directory where run artifacts are written (default: results). Use '' to skip artifacts.",
    )
    parser.add_argument(
        "--no-save-plots",
        dest="save_plots",
        action="store_false",
        default=True,
        help="Disable saving the growth plot.",
    )
    parser.add_argument(
        "--show-plots",
        dest="show_plots",
        action="store_true",
        default=False,
        help="Display plots interactively.",
    )
    parser.add_argument(
        "--no-save-run-metadata",
        dest="save_run_metadata",
        action="store_false",
        default=True,
        help="Skip writing metadata JSON.",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Do not list histograms or per-round progress.",
    )
    parser.add_argument(
        "--cleanup",
        dest="cleanup",
        action="store_true",
        default=True,
        help="Remove __pycache__ directories after the run (default: enabled).",
    )
    parser.add_argument(
        "--no-cleanup",
        dest="cleanup",
        action="store_false",
        help="Leave __pycache__ directories untouched after the run.",
    )
    return parser


def main(argv=None):
    cli_parser = _build_argument_parser()
    cli_args = cli_parser.parse_args(argv)
    try:
        return SimulateBlinks(
            iterations=cli_args.iterations,
            input_path=cli_args.input,
            backend=cli_args.backend,
            output_dir=cli_args.output_dir,
            save_plots=cli_args.save_plots,
            show_plots=cli_args.show_plots,
            save_run_metadata=cli_args.save_run_metadata,
            print_histograms=not cli_args.quiet,
            show_progress=not cli_args.quiet,
        )
    finally:
        if cli_args.cleanup:
            script_directory = os.path.dirname(os.path.abspath(__file__))
            _cleanup_pycache(script_directory)


if __name__ == "__main__":
    main()
