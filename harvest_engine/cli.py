"""Command-line entry point.

Usage:
    python -m harvest_engine.cli init-db
    python -m harvest_engine.cli create-job --name "Dentists US" --niche dentists --country us --target 500
    python -m harvest_engine.cli supervise --discover 1 --extract 4 --generate 1
    python -m harvest_engine.cli worker --type extract --parallelism 20
    python -m harvest_engine.cli status 3
    python -m harvest_engine.cli export 3 --format csv --out dentists.csv
"""

import argparse
import json
import logging
import signal
import sys

from pydantic import ValidationError

from harvest_engine import exporter, job_manager, notifications, task_queue
from harvest_engine.db.init_db import ensure_db, init_db
from harvest_engine.models import JobCreateRequest, TaskType
from harvest_engine.supervisor import Supervisor
from harvest_engine.worker import WorkerLoop, list_workers, request_stop

logger = logging.getLogger("harvest_engine.cli")


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


def cmd_init_db(args) -> int:
    init_db()
    return 0


def cmd_create_job(args) -> int:
    try:
        req = JobCreateRequest(
            name=args.name, niche=args.niche, country_code=args.country,
            email_type=args.email_type, speed_mode=args.speed,
            search_depth=args.depth, target_email_count=args.target,
            time_limit_minutes=args.time_limit,
        )
    except ValidationError as e:
        logger.error("Invalid job: %s", e)
        return 2
    job_id = job_manager.create_job(req)
    print(job_id)
    return 0


def cmd_jobs(args) -> int:
    for job in job_manager.list_jobs(status=args.status, limit=args.limit):
        print(f"#{job['id']:<5} {job['status']:<10} {job['total_emails']:>7} emails  {job['name']}")
    return 0


def cmd_status(args) -> int:
    progress = job_manager.job_progress(args.job_id)
    if progress is None:
        logger.error("Job %d not found", args.job_id)
        return 1
    _print_json(progress)
    return 0


def cmd_stats(args) -> int:
    stats = job_manager.global_stats()
    stats["workers"] = list_workers(active_only=True)
    stats["recent_emails"] = job_manager.recent_emails(args.recent)
    _print_json(stats)
    return 0


def cmd_stop(args) -> int:
    return 0 if job_manager.stop_job(args.job_id) else 1


def cmd_resume(args) -> int:
    return 0 if job_manager.resume_job(args.job_id) else 1


def cmd_delete(args) -> int:
    return 0 if job_manager.delete_job(args.job_id) else 1


def cmd_export(args) -> int:
    if job_manager.get_job(args.job_id) is None:
        logger.error("Job %d not found", args.job_id)
        return 1
    if args.out:
        path = exporter.export_to_file(args.job_id, args.out, args.format,
                                       email_type=args.type, domain=args.domain)
        logger.info("Wrote %s", path)
    elif args.format == "json":
        sys.stdout.write(exporter.export_json(args.job_id, args.type, args.domain) + "\n")
    else:
        sys.stdout.write(exporter.export_csv(args.job_id, args.type, args.domain))
    return 0


def cmd_reclaim(args) -> int:
    print(task_queue.reclaim_expired())
    return 0


def cmd_alerts(args) -> int:
    for a in reversed(notifications.recent_alerts(args.limit, job_id=args.job)):
        print(f"{a['created_at']} [{a['level']}] job={a['job_id']} {a['kind']}: {a['message']}")
    return 0


def cmd_stop_workers(args) -> int:
    print(request_stop(args.type))
    return 0


def cmd_worker(args) -> int:
    loop = WorkerLoop(args.type, worker_id=args.id, max_tasks=args.max_tasks,
                      parallelism=args.parallelism)
    signal.signal(signal.SIGTERM, lambda *_: loop.stop())
    loop.run()
    return 0


def cmd_supervise(args) -> int:
    counts = {
        TaskType.DISCOVER: args.discover,
        TaskType.EXTRACT: args.extract,
        TaskType.GENERATE: args.generate,
    }
    Supervisor(counts).run()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="harvest", description="Email harvesting pipeline")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database schema").set_defaults(func=cmd_init_db)

    p = sub.add_parser("create-job", help="Create a job and queue its discover tasks")
    p.add_argument("--name", required=True)
    p.add_argument("--niche", required=True, help="Comma-separated keywords")
    p.add_argument("--country", default="")
    p.add_argument("--email-type", default="all", choices=["all", "domain", "executive", "personal"])
    p.add_argument("--speed", default="normal")
    p.add_argument("--depth", type=int, default=10, help="Max search queries")
    p.add_argument("--target", type=int, default=0, help="Stop after N emails (0 = no limit)")
    p.add_argument("--time-limit", type=int, default=0, help="Minutes (0 = no limit)")
    p.set_defaults(func=cmd_create_job)

    p = sub.add_parser("jobs", help="List jobs")
    p.add_argument("--status")
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=cmd_jobs)

    p = sub.add_parser("status", help="Progress for one job")
    p.add_argument("job_id", type=int)
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("stats", help="Global stats")
    p.add_argument("--recent", type=int, default=10)
    p.set_defaults(func=cmd_stats)

    for name, func, text in (("stop", cmd_stop, "Stop a job"),
                             ("resume", cmd_resume, "Resume a stopped job"),
                             ("delete", cmd_delete, "Delete a job and its data")):
        p = sub.add_parser(name, help=text)
        p.add_argument("job_id", type=int)
        p.set_defaults(func=func)

    p = sub.add_parser("export", help="Export a job's emails")
    p.add_argument("job_id", type=int)
    p.add_argument("--format", default="csv", choices=["csv", "json"])
    p.add_argument("--type", default=None, choices=["all", "domain", "executive", "personal"])
    p.add_argument("--domain")
    p.add_argument("--out", help="File path (default: stdout)")
    p.set_defaults(func=cmd_export)

    sub.add_parser("reclaim", help="Requeue tasks with expired leases").set_defaults(func=cmd_reclaim)

    p = sub.add_parser("alerts", help="Recent operator alerts")
    p.add_argument("--limit", type=int, default=20)
    p.add_argument("--job", type=int)
    p.set_defaults(func=cmd_alerts)

    p = sub.add_parser("stop-workers", help="Ask running workers to exit")
    p.add_argument("--type", choices=[t.value for t in TaskType])
    p.set_defaults(func=cmd_stop_workers)

    p = sub.add_parser("worker", help="Run one worker until its queue is empty")
    p.add_argument("--type", required=True, choices=[t.value for t in TaskType])
    p.add_argument("--id")
    p.add_argument("--parallelism", type=int)
    p.add_argument("--max-tasks", type=int)
    p.set_defaults(func=cmd_worker)

    p = sub.add_parser("supervise", help="Launch and respawn workers until all work is done")
    p.add_argument("--discover", type=int, default=1)
    p.add_argument("--extract", type=int, default=2)
    p.add_argument("--generate", type=int, default=1)
    p.set_defaults(func=cmd_supervise)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        if args.command != "init-db":
            ensure_db()
        return args.func(args)
    except Exception:
        logger.error("harvest %s failed", args.command, exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
