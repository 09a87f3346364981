#!/usr/bin/env python3
"""
Test runner for the CloudBM test suite.

Discovers the unittest suites under tests/ and prints a short summary.
"""

import argparse
import sys
import time
import unittest
from pathlib import Path

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))


class SummaryTestResult(unittest.TextTestResult):
    """Test result that also counts successes."""

    def __init__(self, stream, descriptions, verbosity):
        super().__init__(stream, descriptions, verbosity)
        self.success_count = 0

    def addSuccess(self, test):
        super().addSuccess(test)
        self.success_count += 1


class SummaryTestRunner(unittest.TextTestRunner):
    """Test runner that prints pass/fail totals after the run."""

    resultclass = SummaryTestResult

    def run(self, test):
        print("CloudBM Test Suite")
        print("=" * 50)

        start_time = time.time()
        result = super().run(test)
        elapsed = time.time() - start_time

        print("\n" + "=" * 50)
        print(f"Total time: {elapsed:.2f} seconds")
        print(f"Passed: {result.success_count}")
        print(f"Failed: {len(result.failures)}")
        print(f"Errors: {len(result.errors)}")
        print(f"Skipped: {len(result.skipped)}")
        print(f"Total: {result.testsRun}")

        for label, problems in (("Failures", result.failures), ("Errors", result.errors)):
            if problems:
                print(f"\n{label}:")
                for test_case, _ in problems:
                    print(f"  - {test_case}")
        return result


def build_suite(test_dir: Path, test_name: str = None, pattern: str = "test_*.py") -> unittest.TestSuite:
    loader = unittest.TestLoader()
    if test_name:
        return loader.loadTestsFromName(f"tests.{test_name}")
    return loader.discover(str(test_dir), pattern=pattern, top_level_dir=str(test_dir.parent))


def main():
    parser = argparse.ArgumentParser(description='Run CloudBM tests')
    parser.add_argument('--test', type=str, help='Run specific test module, e.g. test_cloud')
    parser.add_argument('--pattern', type=str, default='test_*.py', help='Test file pattern')
    parser.add_argument('--verbosity', type=int, default=2, choices=[0, 1, 2],
                        help='Test verbosity level')
    parser.add_argument('--failfast', action='store_true', help='Stop on first failure')
    args = parser.parse_args()

    suite = build_suite(Path(__file__).parent, args.test, args.pattern)
    runner = SummaryTestRunner(verbosity=args.verbosity, failfast=args.failfast, buffer=True)
    result = runner.run(suite)
    sys.exit(0 if result.wasSuccessful() else 1)


if __name__ == '__main__':
    main()
