"""Channel sync scheduler.

Jobs:
- pull bookings from every ACTIVE/DEGRADED connection (CHANNEL_PULL_INTERVAL_MINUTES)
- re-check credentials of DEGRADED/PENDING connections (CHANNEL_REVALIDATE_INTERVAL_MINUTES)

Guardrails:
- SCHEDULER_ENABLED env var (default: true in single-worker mode)
- coalesce=True, max_instances=1 so a slow OTA never stacks pull runs
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from channel_hub.config import (
  CHANNEL_PULL_INTERVAL_MINUTES,
  CHANNEL_REVALIDATE_INTERVAL_MINUTES,
  SCHEDULER_ENABLED,
)

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None
_last_runs: dict = {}


def is_scheduler_enabled() -> bool:
  return SCHEDULER_ENABLED


async def pull_bookings_job() -> dict:
  from channel_hub.runtime import get_orchestrator

  orch = await get_orchestrator()
  started = datetime.now(timezone.utc)
  summaries = await orch.pull_all()
  result = {
    "connections": len(summaries),
    "failed": sum(1 for s in summaries if not s.success and not s.skipped),
    "bookings": sum(s.fetched for s in summaries),
  }
  _last_runs["pull_bookings"] = {"at": started.isoformat(), **result}
  logger.info("[cron] Pulled %(bookings)s bookings from %(connections)s connections (%(failed)s failed)", result)
  return result


async def revalidate_connections_job() -> dict:
  from channel_hub.runtime import get_orchestrator
  from channel_hub.services.channels.connections import revalidate_connection
  from channel_hub.services.channels.types import ConnectionStatus

  orch = await get_orchestrator()
  started = datetime.now(timezone.utc)
  candidates = await orch.connections.list_by_status([ConnectionStatus.DEGRADED, ConnectionStatus.PENDING])
  recovered = 0
  for conn in candidates:
    try:
      doc, check = await revalidate_connection(orch, conn["_id"])
    except Exception:
      logger.exception("[cron] Revalidation of connection %s failed", conn["_id"])
      continue
    if check.valid:
      recovered += 1
  result = {"checked": len(candidates), "recovered": recovered}
  _last_runs["revalidate_connections"] = {"at": started.isoformat(), **result}
  logger.info("[cron] Revalidated %(checked)s connections, %(recovered)s recovered", result)
  return result


def start_scheduler() -> None:
  """Start the APScheduler if enabled."""
  global _scheduler

  if not is_scheduler_enabled():
    logger.info("[cron] Scheduler disabled (SCHEDULER_ENABLED != true)")
    return

  _scheduler = AsyncIOScheduler(timezone="UTC")

  _scheduler.add_job(
    pull_bookings_job,
    "interval",
    minutes=CHANNEL_PULL_INTERVAL_MINUTES,
    id="channel_pull_bookings",
    name="Channel Booking Pull",
    coalesce=True,
    max_instances=1,
    replace_existing=True,
  )
  _scheduler.add_job(
    revalidate_connections_job,
    "interval",
    minutes=CHANNEL_REVALIDATE_INTERVAL_MINUTES,
    id="channel_revalidate_connections",
    name="Channel Credential Re-check",
    coalesce=True,
    max_instances=1,
    replace_existing=True,
  )

  _scheduler.start()
  logger.info(
    "[cron] Scheduler started (pull every %sm, revalidate every %sm)",
    CHANNEL_PULL_INTERVAL_MINUTES,
    CHANNEL_REVALIDATE_INTERVAL_MINUTES,
  )


def stop_scheduler() -> None:
  """Stop the scheduler gracefully."""
  global _scheduler
  if _scheduler and _scheduler.running:
    _scheduler.shutdown(wait=False)
    logger.info("[cron] Scheduler stopped")


def get_scheduler_status() -> dict:
  running = _scheduler.running if _scheduler else False
  jobs = []
  if _scheduler and _scheduler.running:
    for job in _scheduler.get_jobs():
      jobs.append({"id": job.id, "next_run_at": str(job.next_run_time) if job.next_run_time else None})
  return {
    "scheduler_enabled": is_scheduler_enabled(),
    "scheduler_running": running,
    "jobs": jobs,
    "last_runs": dict(_last_runs),
  }
