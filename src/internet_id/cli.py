import argparse
import json
import sys

from .config import resolve_config
from .log import configure_logging
from .queue import JobFilter, JobKind, JobStatus, JobStore, VerificationQueueService, create_queue_backend


def _print_stats(store: JobStore):
    counts = store.count_by_status()
    print("\n" + "=" * 60)
    print("VERIFICATION JOBS")
    print("=" * 60)
    print(f"Queued:               {counts[JobStatus.QUEUED]}")
    print(f"Processing:           {counts[JobStatus.PROCESSING]}")
    print(f"Completed:            {counts[JobStatus.COMPLETED]}")
    print(f"Failed:               {counts[JobStatus.FAILED]}")
    print(f"Total:                {sum(counts.values())}")
    print("=" * 60)


def _print_jobs(store: JobStore, args):
    job_filter = JobFilter(
        status=JobStatus(args.status) if args.status else None,
        kind=JobKind(args.kind) if args.kind else None,
        limit=args.limit,
    )
    jobs = store.list(job_filter)
    if not jobs:
        print("No jobs found.")
        return
    for job in jobs:
        print(
            f"{job.id}  {job.kind.value:<6}  {job.status.value:<10}  "
            f"{job.progress:>3}%  attempt {job.attempt}/{job.max_attempts}  "
            f"{job.created_at.isoformat()}"
        )


def main(argv=None):
    config = resolve_config()
    configure_logging(config.logging.level)

    parser = argparse.ArgumentParser(
        prog="internet-id-jobs", description="Inspect and maintain verification jobs"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # STATS
    stats_parser = subparsers.add_parser("stats", help="Show job counts per status")
    stats_parser.add_argument("--db", type=str, default=config.database.url, help="Database URL")

    # LIST
    list_parser = subparsers.add_parser("list", help="List jobs, newest first")
    list_parser.add_argument("--db", type=str, default=config.database.url, help="Database URL")
    list_parser.add_argument("--status", choices=[s.value for s in JobStatus], help="Filter by status")
    list_parser.add_argument("--kind", choices=[k.value for k in JobKind], help="Filter by kind")
    list_parser.add_argument("--limit", type=int, default=20, help="Max jobs to show")

    # SHOW
    show_parser = subparsers.add_parser("show", help="Print one job as JSON")
    show_parser.add_argument("job_id", type=str, help="Job identifier")
    show_parser.add_argument("--db", type=str, default=config.database.url, help="Database URL")

    # RECOVER
    recover_parser = subparsers.add_parser(
        "recover", help="Requeue processing jobs that stopped reporting"
    )
    recover_parser.add_argument(
        "--timeout", type=float, required=True, help="Seconds without an update"
    )
    recover_parser.add_argument("--db", type=str, default=config.database.url, help="Database URL")
    recover_parser.add_argument(
        "--queue", type=str, default=config.queue.url, help="Queue backend URL"
    )

    # INIT-DB
    init_parser = subparsers.add_parser("init-db", help="Create the job table")
    init_parser.add_argument("--db", type=str, default=config.database.url, help="Database URL")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    if args.command == "init-db":
        JobStore(args.db).close()
        print(f"Tables created in {args.db}")
        return

    store = JobStore(args.db, create_tables=False)
    try:
        if args.command == "stats":
            _print_stats(store)

        elif args.command == "list":
            _print_jobs(store, args)

        elif args.command == "show":
            job = store.get(args.job_id)
            if job is None:
                print(f"Job not found: {args.job_id}", file=sys.stderr)
                sys.exit(1)
            print(json.dumps(job.model_dump(mode="json"), indent=2))

        elif args.command == "recover":
            backend = create_queue_backend(args.queue)
            if backend is None:
                print("❌ No queue backend configured (use --queue or QUEUE_URL).", file=sys.stderr)
                sys.exit(1)
            # Recovery only moves records and messages; the unit of work is never run
            service = VerificationQueueService(store, verifier=None, backend=backend, config=config.queue)
            try:
                touched = service.recover_stalled(args.timeout)
            finally:
                backend.close()
            for job in touched:
                print(f"{job.id}  {job.status.value}  attempt {job.attempt}/{job.max_attempts}")
            print(f"✅ {len(touched)} stalled job(s) handled.")
    finally:
        store.close()


if __name__ == "__main__":
    main()
