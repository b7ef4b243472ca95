import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from .config import WorkerSettings, resolve_config
from .logging_utils import setup_logging
from .queue import (
    InMemoryQueue,
    JobNotFoundError,
    JobStatus,
    QueueBackend,
    SQLQueueStore,
    WorkerPool,
)
from .render_service import InvalidRenderRequest, RenderService
from .renderer import RenderAdapter, build_adapter
from .shutdown import EXIT_FORCED_SHUTDOWN, EXIT_OK, EXIT_STARTUP_FAILURE, ShutdownCoordinator
from .storage import Uploader, build_uploader

logger = logging.getLogger(__name__)


def build_store(settings: WorkerSettings) -> QueueBackend:
    if settings.queue_backend == "memory":
        return InMemoryQueue()
    return SQLQueueStore.from_settings(settings)


async def run_worker(
    settings: WorkerSettings,
    store: Optional[QueueBackend] = None,
    adapter: Optional[RenderAdapter] = None,
    uploader: Optional[Uploader] = None,
    force_exit: Callable[[int], Any] = os._exit,
) -> int:
    """Run one worker process until shutdown.

    Returns:
        EXIT_OK after a graceful drain, EXIT_STARTUP_FAILURE if the store is
        unreachable. A forced shutdown cancels active renders and calls
        ``force_exit(EXIT_FORCED_SHUTDOWN)``.
    """
    store = store or build_store(settings)
    try:
        await store.connect()
    except Exception as e:
        logger.critical(
            "Queue store unreachable at startup: %s", e, extra={"event": "startup_failed"}
        )
        return EXIT_STARTUP_FAILURE

    pool = WorkerPool.from_settings(
        settings, store, adapter or build_adapter(settings), uploader or build_uploader(settings)
    )
    coordinator = ShutdownCoordinator(pool, store, timeout_s=settings.shutdown_timeout_s)
    coordinator.install(asyncio.get_running_loop())

    loop_task = asyncio.create_task(pool.run(), name="worker-loop")
    waiter = asyncio.create_task(coordinator.wait(), name="shutdown-wait")
    try:
        done, _ = await asyncio.wait({loop_task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if loop_task in done and not coordinator.requested:
            error = loop_task.exception()
            if error is not None:
                logger.error(
                    "Worker loop crashed",
                    exc_info=(type(error), error, error.__traceback__),
                    extra={"event": "worker_loop_crashed"},
                )
            coordinator.request("worker loop exited")
        exit_code = await waiter
        await asyncio.gather(loop_task, return_exceptions=True)
    finally:
        coordinator.uninstall()

    if exit_code == EXIT_FORCED_SHUTDOWN:
        pool.cancel_active()
        for handler in logging.getLogger().handlers:
            handler.flush()
        force_exit(EXIT_FORCED_SHUTDOWN)
    return exit_code


def _read_params(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    if raw.startswith("@"):
        raw = Path(raw[1:]).read_text(encoding="utf-8")
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("params must be a JSON object")
    return data


async def _with_store(settings: WorkerSettings, action: Callable[[QueueBackend], Any]) -> Any:
    store = build_store(settings)
    await store.connect()
    try:
        return await action(store)
    finally:
        await store.close()


async def _enqueue(settings: WorkerSettings, user_id: str, params: Dict[str, Any]) -> str:
    async def action(store: QueueBackend) -> str:
        return await RenderService(store).create_job(user_id, params)

    return await _with_store(settings, action)


async def _status(settings: WorkerSettings, job_id: Optional[str]) -> None:
    async def action(store: QueueBackend) -> None:
        if job_id:
            job = await RenderService(store).get_job(job_id)
            print(f"Job:        {job.id}")
            print(f"Status:     {job.status.value}")
            print(f"Progress:   {job.progress:.0%}")
            print(f"User:       {job.user_id}")
            if job.output_reference:
                print(f"Output:     {job.output_reference}")
            if job.error:
                print(f"Error:      {job.error}")
            return

        counts = await store.count_by_status()
        print("\n" + "=" * 60)
        print("QUEUE STATUS")
        print("=" * 60)
        print(f"Queued:               {counts[JobStatus.QUEUED.value]}")
        print(f"Rendering:            {counts[JobStatus.RENDERING.value]}")
        print(f"Completed:            {counts[JobStatus.COMPLETED.value]}")
        print(f"Failed:               {counts[JobStatus.FAILED.value]}")
        print(f"Total:                {sum(counts.values())}")
        print("=" * 60)

    await _with_store(settings, action)


async def _credits(settings: WorkerSettings, user_id: str, new_balance: Optional[int]) -> Optional[int]:
    async def action(store: QueueBackend) -> Optional[int]:
        if new_balance is not None:
            await store.set_credits(user_id, new_balance)
        return await store.get_credits(user_id)

    return await _with_store(settings, action)


async def _reap(settings: WorkerSettings) -> int:
    async def action(store: QueueBackend) -> int:
        return await store.fail_expired_leases()

    return await _with_store(settings, action)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="render-queue", description="Render job queue and worker"
    )
    parser.add_argument("--db", type=str, help="Queue store URL (sqlite:///path or postgresql://...)")
    parser.add_argument("--backend", choices=["durable", "memory"], help="Queue backend")
    parser.add_argument("--log-level", type=str, help="Log level (DEBUG, INFO, ...)")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run a render worker")
    worker_parser.add_argument("--max-parallel", "-w", type=int, help="Concurrent renders")
    worker_parser.add_argument("--poll-interval-ms", type=int, help="Idle poll delay (ms)")
    worker_parser.add_argument("--renderer", choices=["ffmpeg", "mock"], help="Render adapter")
    worker_parser.add_argument("--temp-dir", type=str, help="Scratch dir for local renders")
    worker_parser.add_argument("--shutdown-timeout-ms", type=int, help="Graceful drain deadline (ms)")
    worker_parser.add_argument("--worker-id", type=str, help="Claimant id (default: host-pid)")

    # ENQUEUE
    enqueue_parser = subparsers.add_parser("enqueue", help="Queue a render job")
    enqueue_parser.add_argument("--user", "-u", type=str, required=True, help="User id to bill")
    enqueue_parser.add_argument(
        "--params", "-p", type=str, help="Render parameters as JSON, or @file.json"
    )

    # STATUS
    status_parser = subparsers.add_parser("status", help="Show queue or job status")
    status_parser.add_argument("--job", "-j", type=str, help="Job id")

    # CREDITS
    credits_parser = subparsers.add_parser("credits", help="Show or set a user's credit balance")
    credits_parser.add_argument("--user", "-u", type=str, required=True, help="User id")
    credits_parser.add_argument("--set", type=int, dest="set_balance", help="New balance")

    # REAP
    subparsers.add_parser("reap", help="Fail jobs whose leases expired with no claims left")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return

    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    try:
        settings = resolve_config(cli_dict)
    except ValidationError as e:
        print(f"❌ Invalid configuration:\n{e}", file=sys.stderr)
        sys.exit(EXIT_STARTUP_FAILURE)
    setup_logging(settings.log_level)

    if args.command == "worker":
        sys.exit(asyncio.run(run_worker(settings)))

    elif args.command == "enqueue":
        try:
            params = _read_params(args.params)
            job_id = asyncio.run(_enqueue(settings, args.user, params))
        except (InvalidRenderRequest, ValueError, OSError) as e:
            print(f"❌ {e}", file=sys.stderr)
            sys.exit(1)
        print(f"✅ Queued job {job_id}")

    elif args.command == "status":
        try:
            asyncio.run(_status(settings, args.job))
        except JobNotFoundError as e:
            print(f"❌ {e}", file=sys.stderr)
            sys.exit(1)

    elif args.command == "credits":
        balance = asyncio.run(_credits(settings, args.user, args.set_balance))
        if balance is None:
            print(f"No credit balance for {args.user}")
        else:
            print(f"{args.user}: {balance} credits")

    elif args.command == "reap":
        failed = asyncio.run(_reap(settings))
        print(f"Failed {failed} jobs with expired leases")

    sys.exit(EXIT_OK)


if __name__ == "__main__":
    main()
