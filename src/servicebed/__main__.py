"""Nominal program entry point: ``python -m servicebed``."""

import sys


def main() -> int:
    print("Hello, world!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
