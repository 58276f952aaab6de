"""Command-line entry points for the audit recovery monitor.

Usage:
    python -m audit_recovery.cli recover    # one detect/remediate cycle, exit 0/1
    python -m audit_recovery.cli monitor    # run the monitor loop until interrupted
    python -m audit_recovery.cli serve      # HTTP API with the monitor running in its lifespan
"""

import argparse
import asyncio
import logging
import sys

import uvicorn

from audit_recovery.monitor.factory import build_monitor
from audit_recovery.monitor.loop import HealthMonitor
from audit_recovery.monitor.models import Notification, RecoveryResult, Severity

logger = logging.getLogger(__name__)


def format_summary(result: RecoveryResult) -> str:
    status = "SUCCESS" if result.success else "FAILED"
    lines = [f"Recovery {status}: {result.message}"]
    if result.recovery_time_ms is not None:
        lines.append(f"Recovery time: {result.recovery_time_ms:.0f}ms")
    return "\n".join(lines)


async def execute_recovery(monitor: HealthMonitor | None = None) -> int:
    """Run one recovery cycle, print a summary and return the process exit code."""
    try:
        monitor = monitor or build_monitor()
    except Exception as e:
        print(f"Failed to build monitor: {e}", file=sys.stderr)
        return 1

    try:
        result = await monitor.run_recovery()
        print(format_summary(result))
        try:
            await monitor.sink.send(
                Notification(
                    severity=Severity.LOW if result.success else Severity.CRITICAL,
                    title="Audit recovery succeeded" if result.success else "Audit recovery failed",
                    message=result.message,
                    details={"recovery_time_ms": result.recovery_time_ms},
                )
            )
        except Exception:
            logger.exception("Failed to deliver the recovery summary notification")
    finally:
        await asyncio.to_thread(monitor.store.close)
    return 0 if result.success else 1


async def run_monitor(interval_seconds: float | None = None) -> None:
    """Run the monitor loop until cancelled (Ctrl+C)."""
    monitor = build_monitor()
    monitor.start_monitoring(interval_seconds)
    try:
        await asyncio.Event().wait()
    finally:
        await monitor.stop_monitoring()
        await asyncio.to_thread(monitor.store.close)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="audit-recovery", description="Self-healing audit store monitor")
    parser.add_argument("-v", "--verbose", action="store_true", help="log at INFO instead of WARNING")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("recover", help="run one detect/remediate cycle and exit")
    monitor_parser = subparsers.add_parser("monitor", help="run the monitor loop until interrupted")
    monitor_parser.add_argument("--interval", type=float, default=None, help="tick interval in seconds")
    serve_parser = subparsers.add_parser("serve", help="run the HTTP API (starts the monitor loop too)")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )

    if args.command == "recover":
        sys.exit(asyncio.run(execute_recovery()))
    if args.command == "serve":
        uvicorn.run("audit_recovery.api.main:app", host=args.host, port=args.port)
        return

    try:
        asyncio.run(run_monitor(args.interval))
    except KeyboardInterrupt:
        print("\nMonitor stopped.")


if __name__ == "__main__":
    main()
