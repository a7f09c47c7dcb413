from __future__ import annotations

from typing import Optional

from channel_hub.db import get_db
from channel_hub.services.channels.orchestrator import ChannelOrchestrator
from channel_hub.services.channels.registry import AdapterRegistry, get_default_registry

_orchestrator: Optional[ChannelOrchestrator] = None


def init_orchestrator(db, registry: Optional[AdapterRegistry] = None) -> ChannelOrchestrator:
    global _orchestrator
    _orchestrator = ChannelOrchestrator(db, registry or get_default_registry())
    return _orchestrator


def reset_orchestrator() -> None:
    global _orchestrator
    _orchestrator = None


async def get_orchestrator() -> ChannelOrchestrator:
    """FastAPI dependency: the process-wide orchestrator.

    It owns the per-connection locks and the fan-out semaphore, so exactly one
    instance must serve every request and background job in this process.
    """

    if _orchestrator is None:
        init_orchestrator(await get_db())
    assert _orchestrator is not None
    return _orchestrator
