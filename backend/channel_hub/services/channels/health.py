from __future__ import annotations

import logging

from channel_hub.repositories.connection_repository import ConnectionRepository
from channel_hub.repositories.sync_log_repository import SyncLogRepository
from channel_hub.services.channels.types import ConnectionStatus, SyncOperation

logger = logging.getLogger(__name__)

HEALTH_OPERATIONS = (
  SyncOperation.PUSH_INVENTORY.value,
  SyncOperation.PUSH_RATES.value,
  SyncOperation.PULL_BOOKINGS.value,
)

# sync-log outcome of a credential check that brought the connection back
RECOVERED = "RECOVERED"


async def consecutive_failures(sync_logs: SyncLogRepository, connection_id: str, window: int) -> int:
  """Number of failed adapter calls at the head of the connection's log.

  A credential check that reactivated the connection ends the streak:
  failures from before a recovery never count against it.
  """

  rows = await sync_logs.health_window(
    connection_id,
    operations=HEALTH_OPERATIONS,
    reset_operation=SyncOperation.VALIDATE_CREDENTIALS.value,
    reset_outcome=RECOVERED,
    limit=window,
  )
  count = 0
  for row in rows:
    if row.get("success"):
      break
    count += 1
  return count


async def evaluate_degradation(
  connections: ConnectionRepository,
  sync_logs: SyncLogRepository,
  connection_id: str,
  *,
  threshold: int,
  last_error: str | None = None,
) -> bool:
  """Move ACTIVE -> DEGRADED once `threshold` calls in a row have failed.

  Returns True when this call performed the transition. Reconciliation
  outcomes (booking-scope rows) never count here.
  """

  if threshold <= 0:
    return False
  failures = await consecutive_failures(sync_logs, connection_id, threshold)
  if failures < threshold:
    return False
  moved = await connections.transition(
    connection_id,
    ConnectionStatus.DEGRADED,
    from_statuses=[ConnectionStatus.ACTIVE],
    last_error=last_error,
  )
  if moved:
    logger.warning("Connection %s degraded after %s consecutive failures", connection_id, failures)
  return moved
