"""Periodic scanner to send due reminders.
Run via a cron schedule every minute:
    python -m app.scripts.scan_due_reminders
"""

from __future__ import annotations

import asyncio
import logging

from app.workers.reminder import sweep_once

from config import settings


async def main() -> None:
    report = await sweep_once()
    if report.skipped:
        print("[CRON] scan_due_reminders: another sweep holds the lease")
        return
    if report.aborted:
        print("[CRON] scan_due_reminders: lease lost, sweep stopped early")
        return
    print(f"[CRON] scan_due_reminders: {report.due} due, {report.sent} sent, {report.failed} failed")


if __name__ == "__main__":  # pragma: no cover
    logging.basicConfig(level=settings.LOG_LEVEL)
    print("[CRON] scan_due_reminders: job started")
    try:
        asyncio.run(main())
        print("[CRON] scan_due_reminders: job completed successfully")
    except Exception as e:
        print(f"[CRON] scan_due_reminders: job failed: {e}")
        raise SystemExit(1)
