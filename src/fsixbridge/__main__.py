"""CLI entry point for fsixbridge."""

import sys


def main() -> int:
    """Main entry point for the fsixbridge CLI."""
    from fsixbridge.cli import run_cli

    return run_cli(sys.argv[1:])


if __name__ == "__main__":
    sys.exit(main())
