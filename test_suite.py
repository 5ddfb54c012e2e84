# test_suite.py
import argparse
import contextlib
import io
import json
import os
import tempfile
import unittest
from pathlib import Path

os.environ.setdefault("MPLBACKEND", "Agg")

import pandas as pd

from Stones import StoneStateMachine
from StonesSuite import _parse_steps, digit_distribution, run_growth_study, run_suite


class TestDigitDistribution(unittest.TestCase):

    def test_groups_by_digit_length(self):
        dist = digit_distribution({253000: 1, 1: 1, 7: 1})

        self.assertEqual(dist["Digits"].tolist(), [1, 6])
        self.assertEqual(dist["DistinctValues"].tolist(), [2, 1])
        self.assertEqual(dist["Stones"].tolist(), [2, 1])
        self.assertEqual(dist["Splits"].tolist(), [False, True])
        self.assertAlmostEqual(dist["Stones_Pct"].sum(), 100.0)

    def test_even_rows_predict_next_round_growth(self):
        histogram = {17: 4, 2024: 3, 125: 9, 0: 2}
        dist = digit_distribution(histogram)
        splitting = sum(dist.loc[dist["Splits"], "Stones"])
        self.assertEqual(splitting, 7)

    def test_empty_histogram(self):
        dist = digit_distribution({})
        self.assertTrue(dist.empty)
        self.assertEqual(list(dist.columns), ["Digits", "DistinctValues", "Stones", "Stones_Pct", "Splits"])


class TestGrowthStudy(unittest.TestCase):

    def test_snapshots_requested_steps(self):
        rows, elapsed = run_growth_study([125, 17], [25, 6, 0])

        self.assertEqual([row["Iterations"] for row in rows], [0, 6, 25])
        self.assertEqual([row["TotalStones"] for row in rows], [2, 22, 55312])
        self.assertGreaterEqual(elapsed, 0.0)

    def test_warm_engine_keeps_its_memo(self):
        engine = StoneStateMachine()
        first, _ = run_growth_study([125, 17], [25], engine=engine)
        memo_size = len(engine)
        second, _ = run_growth_study([125, 17], [25], engine=engine)

        self.assertEqual(len(engine), memo_size)
        self.assertEqual(first[0]["TotalStones"], second[0]["TotalStones"])

    def test_rejects_empty_steps(self):
        with self.assertRaises(ValueError):
            run_growth_study([125, 17], [])

    def test_parse_steps(self):
        self.assertEqual(_parse_steps("25, 6,6"), [6, 25])
        with self.assertRaises(ValueError):
            _parse_steps(" , ")
        with self.assertRaises(ValueError):
            _parse_steps("-1,5")


class TestRunSuite(unittest.TestCase):

    def test_writes_distribution_and_study(self):
        with tempfile.TemporaryDirectory() as tmp:
            args = argparse.Namespace(
                values="125 17",
                input=None,
                n=6,
                study="6,25",
                reps=2,
                backend="python",
                output=tmp,
            )
            with contextlib.redirect_stdout(io.StringIO()):
                run_suite(args)

            out_dir = Path(tmp)
            dist = pd.read_csv(next(out_dir.glob("dist_digits_*.csv")))
            self.assertEqual(int(dist["Stones"].sum()), 22)

            with next(out_dir.glob("meta_dist_*.json")).open() as f:
                meta = json.load(f)
            self.assertEqual(meta["total_stones"], 22)

            study = pd.read_csv(next(out_dir.glob("study_growth_*.csv")))
            self.assertEqual(len(study), 4)
            self.assertEqual(sorted(study["TotalStones"].unique().tolist()), [22, 55312])

            with next(out_dir.glob("meta_study_*.json")).open() as f:
                meta_study = json.load(f)
            self.assertEqual(meta_study["steps"], [6, 25])
            self.assertEqual(set(meta_study["timing_stats"]), {"cold", "warm"})

    def test_reads_input_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            input_path = Path(tmp) / "input.txt"
            input_path.write_text("125 17\n", encoding="utf-8")
            args = argparse.Namespace(
                values=None,
                input=str(input_path),
                n=25,
                study=None,
                reps=1,
                backend="python",
                output=str(Path(tmp) / "results"),
            )
            with contextlib.redirect_stdout(io.StringIO()):
                run_suite(args)

            with next((Path(tmp) / "results").glob("meta_dist_*.json")).open() as f:
                meta = json.load(f)
            self.assertEqual(meta["total_stones"], 55312)


if __name__ == '__main__':
    unittest.main()
