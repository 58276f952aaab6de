"""Run one audit recovery cycle and print the outcome.

Usage:
    python -m scripts.run_recovery
"""

import asyncio
import logging
import sys

from audit_recovery.cli import execute_recovery

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s",
)


if __name__ == "__main__":
    sys.exit(asyncio.run(execute_recovery()))
