"""Run all test cases.
Run each file in a separate process so global config changes do not leak.

Usages:
# Run all files
python3 run_all.py

# Run files whose names contain "builder"
python3 run_all.py --run-pattern builder

# Run files whose names do not contain "recompute"
python3 run_all.py --skip-pattern recompute
"""

import argparse
import glob
import multiprocessing
import time
import unittest

import numpy as np


def run_unittest_files(files, args):
    """Run unit test files one by one in separates processes."""
    for filename in files:
        if args.run_pattern is not None and args.run_pattern not in filename:
            continue
        if args.skip_pattern is not None and args.skip_pattern in filename:
            continue

        def func():
            unittest.main(module=None, argv=["", "-vb"] + [filename])

        p = multiprocessing.Process(target=func)
        p.start()
        p.join(timeout=args.time_limit_per_file)
        if p.is_alive():
            p.terminate()
            p.join()
            print(f"\nTimeout after {args.time_limit_per_file} seconds "
                  f"when running {filename}")
            return False
        if p.exitcode != 0:
            return False

    return True


if __name__ == "__main__":
    arg_parser = argparse.ArgumentParser()
    arg_parser.add_argument(
        "--run-pattern",
        type=str,
        default=None,
        help="Run files whose names contain the provided string")
    arg_parser.add_argument(
        "--skip-pattern",
        type=str,
        default=None,
        help="Do not run files whose names contain the provided string")
    arg_parser.add_argument(
        "--time-limit-per-file",
        type=int,
        default=300,
        help="The time limit for running one file in seconds.")
    arg_parser.add_argument("--order",
                            type=str,
                            default="sorted",
                            choices=["sorted", "random", "reverse_sorted"])
    args = arg_parser.parse_args()

    files = glob.glob("**/test_*.py", recursive=True)
    if args.order == "sorted":
        files.sort()
    elif args.order == "random":
        files = [files[i] for i in np.random.permutation(len(files))]
    elif args.order == "reverse_sorted":
        files.sort()
        files = reversed(files)

    tic = time.time()
    success = run_unittest_files(files, args)

    if success:
        print(f"Success. Time elapsed: {time.time() - tic:.2f}s")
    else:
        print(f"Fail. Time elapsed: {time.time() - tic:.2f}s")

    exit(0 if success else -1)
