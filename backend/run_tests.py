#!/usr/bin/env python3
"""
Test runner script for the backend.
"""
import subprocess
import sys
import argparse
import os


def run_command(command, description):
    """Run a command and handle errors."""
    print(f"\n{'='*50}")
    print(f"Running: {description}")
    print(f"Command: {' '.join(command)}")
    print(f"{'='*50}")

    try:
        subprocess.run(command, check=True)
        print(f"✅ {description} completed successfully")
        return True
    except subprocess.CalledProcessError as e:
        print(f"❌ {description} failed with exit code {e.returncode}")
        return False


def show_test_groups():
    """Display information about available test groups/markers."""
    print("\n" + "="*60)
    print("BACKEND TEST GROUPS (Pytest Markers)")
    print("="*60)
    print("\nAvailable test markers:")
    print("\n  📦 Test Types:")
    print("     • unit           - Unit tests (no database)")
    print("     • integration    - Full request flows through the API")
    print("\n  🏷️  Feature Categories:")
    print("     • api            - API endpoint tests")
    print("     • service        - Password reset service tests")
    print("     • database       - Tests touching the SQLite test database")
    print("     • email          - Email transport and template tests")
    print("\n" + "="*60)
    print("\nUsage Examples:")
    print("  python run_tests.py --type unit              # Run unit tests")
    print("  python run_tests.py -m email                 # Run email tests")
    print("  python run_tests.py -m 'service and not api' # Combine markers")
    print("  pytest --markers                              # List all pytest markers")
    print("\n" + "="*60 + "\n")


def main():
    parser = argparse.ArgumentParser(description="Run backend tests")
    parser.add_argument(
        "--type",
        choices=["unit", "integration", "all"],
        default="all",
        help="Type of tests to run"
    )
    parser.add_argument(
        "-m", "--marker",
        help="Run tests matching a marker expression"
    )
    parser.add_argument(
        "--file",
        help="Run specific test file"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Run tests in verbose mode"
    )
    parser.add_argument(
        "--info",
        action="store_true",
        help="Show information about available test groups"
    )

    args = parser.parse_args()

    if args.info:
        show_test_groups()
        sys.exit(0)

    # Change to backend directory
    backend_dir = os.path.dirname(os.path.abspath(__file__))
    os.chdir(backend_dir)

    command = [sys.executable, "-m", "pytest"]
    if args.verbose:
        command.append("-v")

    if args.file:
        command.append(f"tests/{args.file}")
        description = f"Running test file: {args.file}"
    elif args.marker:
        command += ["-m", args.marker, "tests/"]
        description = f"Running tests marked '{args.marker}'"
    elif args.type in ("unit", "integration"):
        command += ["-m", args.type, "tests/"]
        description = f"Running {args.type} tests"
    else:  # all
        command.append("tests/")
        description = "Running all tests"

    success = run_command(command, description)

    if not success:
        sys.exit(1)

    print("\n🎉 All tests completed successfully!")


if __name__ == "__main__":
    main()
