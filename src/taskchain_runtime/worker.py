"""Dispatch worker: the external driver that runs dispatch passes.

    python -m taskchain_runtime.worker                # one pass
    python -m taskchain_runtime.worker --loop --interval 2
    python -m taskchain_runtime.worker --registry myapp.tasks:registry
"""

from __future__ import annotations

import argparse
import json
import logging
import time
from collections.abc import Callable, Sequence

from taskchain_runtime.bodies import TaskBodyRegistry, import_entrypoint
from taskchain_runtime.config.logsetup import configure_logging
from taskchain_runtime.config.settings import Settings, get_settings
from taskchain_runtime.dispatcher import DispatchReport
from taskchain_runtime.runtime import TaskRuntime

logger = logging.getLogger(__name__)


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Perform pending host calls and resume the task runs waiting on them."
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep polling instead of running a single dispatch pass.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between passes in --loop mode (default: TASKCHAIN_RUNTIME_DISPATCH_INTERVAL_S).",
    )
    parser.add_argument(
        "--max-passes",
        type=int,
        default=None,
        help="Stop --loop mode after this many passes.",
    )
    parser.add_argument(
        "--registry",
        default="",
        help="Importable 'package.module:attribute' TaskBodyRegistry with in-process bodies.",
    )
    return parser.parse_args(argv)


def load_registry(entrypoint: str) -> TaskBodyRegistry | None:
    if not entrypoint:
        return None
    registry = import_entrypoint(entrypoint)
    if not isinstance(registry, TaskBodyRegistry):
        raise TypeError(f"{entrypoint!r} is not a TaskBodyRegistry")
    return registry


def run_worker(
    runtime: TaskRuntime,
    *,
    loop: bool = False,
    interval_s: float = 5.0,
    max_passes: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> list[DispatchReport]:
    """Run one pass, or passes every `interval_s` until `max_passes` or Ctrl-C."""
    reports: list[DispatchReport] = []
    try:
        while True:
            report = runtime.dispatch_once()
            reports.append(report)
            logger.info("worker event=pass report=%s", json.dumps(report.to_dict(), default=str))
            if not loop or (max_passes is not None and len(reports) >= max_passes):
                break
            sleep(interval_s)
    except KeyboardInterrupt:
        logger.info("worker event=stopped passes=%d", len(reports))
    return reports


def main(argv: Sequence[str] | None = None, *, settings: Settings | None = None) -> int:
    args = _parse_args(argv)
    settings = settings or get_settings()
    configure_logging(settings)

    runtime = TaskRuntime.from_settings(settings, registry=load_registry(args.registry))
    try:
        reports = run_worker(
            runtime,
            loop=args.loop,
            interval_s=args.interval if args.interval is not None else settings.dispatch_interval_s,
            max_passes=args.max_passes,
        )
    finally:
        runtime.close()

    # Non-zero when the final pass hit errors so cron-style drivers notice.
    if reports and reports[-1].errors:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
