#!/usr/bin/env python3
"""
Process due event reminders (and optionally birthday greetings) once.

The scheduler already does this every minute; use this script to catch up
after downtime or to preview what would be sent.

Usage:
    python scripts/process_reminders.py [--school-id ID] [--dry-run] [--birthdays]
    python scripts/process_reminders.py --async   # hand off to a running scheduler
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

load_dotenv(".env.local")
load_dotenv()

from school_notify.database import close_engine
from school_notify.notifications.scheduler import (
    init_scheduler,
    schedule_reminder_processing,
    shutdown_scheduler,
)
from school_notify.reminders.engine import create_birthday_reminders, process_event_reminders

logger = logging.getLogger("process_reminders")


def print_previews(title: str, previews: list[dict]) -> None:
    print(f"\n{title}: {len(previews)} reminder(s) would be created")
    for preview in previews:
        flag = " (already processed)" if preview.get("already_processed") else ""
        stale = " (stale, would be skipped)" if preview.get("stale") else ""
        name = preview.get("recipient_name") or preview.get("recipient_id")
        label = preview.get("event_title") or f"birthday {preview.get('birthday')}"
        print(f"  - {label} -> {name} at {preview['scheduled_for']}{flag}{stale}")


async def run(tenant_id: int | None, dry_run: bool, birthdays: bool) -> None:
    try:
        stats = await process_event_reminders(tenant_id=tenant_id, dry_run=dry_run)
        if dry_run:
            print_previews("Event reminders", stats.previews)
        else:
            print(
                f"Events processed: {stats.events_processed}\n"
                f"Reminders sent:   {stats.reminders_sent}\n"
                f"Failed:           {stats.failed_reminders}\n"
                f"Skipped:          {stats.skipped_reminders}\n"
                f"Attendees:        {stats.attendees_notified}"
            )

        if birthdays:
            birthday_stats = await create_birthday_reminders(tenant_id=tenant_id, dry_run=dry_run)
            if dry_run:
                print_previews("Birthday reminders", birthday_stats.previews)
            else:
                print(f"Birthday reminders: {birthday_stats.reminders_sent}")
    finally:
        await close_engine()


async def run_async(tenant_id: int | None, birthdays: bool) -> None:
    # Jobs go to the persistent job store, so the running service picks them up
    init_scheduler(skip_if_db_unavailable=False, register_jobs=False)
    try:
        job_id = schedule_reminder_processing(tenant_id, birthdays)
        print(f"Scheduled reminder processing job: {job_id}")
    finally:
        shutdown_scheduler()


def main():
    parser = argparse.ArgumentParser(description="Process event and birthday reminders")
    parser.add_argument(
        "--school-id",
        "--tenant-id",
        dest="tenant_id",
        type=int,
        default=None,
        help="Only process this school's events",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be sent without writing anything",
    )
    parser.add_argument(
        "--birthdays",
        action="store_true",
        help="Also create birthday greetings",
    )
    parser.add_argument(
        "--async",
        dest="run_async",
        action="store_true",
        help="Schedule the run on the service's scheduler instead of running here",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s [%(name)s] %(message)s")

    if args.run_async:
        if args.dry_run:
            parser.error("--dry-run can't be combined with --async")
        asyncio.run(run_async(args.tenant_id, args.birthdays))
    else:
        asyncio.run(run(args.tenant_id, args.dry_run, args.birthdays))


if __name__ == "__main__":
    main()
