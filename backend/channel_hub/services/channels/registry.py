from __future__ import annotations

from typing import Dict, List, Optional

from channel_hub.errors import ChannelAdapterError
from channel_hub.services.channels.providers.agoda import AgodaChannelProvider
from channel_hub.services.channels.providers.base import BaseChannelProvider
from channel_hub.services.channels.providers.stubs import (
  BookingComChannelProvider,
  ExpediaChannelProvider,
  GoZayaanChannelProvider,
  ShareTripChannelProvider,
)


class AdapterRegistry:
  """Channel type -> adapter instance table.

  Built once at process start and handed to the orchestrator; lookups of an
  unknown channel type are configuration errors and raise immediately.
  """

  def __init__(self) -> None:
    self._adapters: Dict[str, BaseChannelProvider] = {}

  def _normalize_code(self, channel_type: str) -> str:
    return (channel_type or "").strip().upper()

  def register(self, channel_type: str, adapter: BaseChannelProvider) -> None:
    self._adapters[self._normalize_code(channel_type)] = adapter

  def get(self, channel_type: str) -> BaseChannelProvider:
    adapter = self._adapters.get(self._normalize_code(channel_type))
    if not adapter:
      raise ChannelAdapterError(
        code="adapter_not_found",
        message=f"No adapter registered for channel '{channel_type}'",
        retryable=False,
        details={"channel_type": channel_type},
      )
    return adapter

  def supports(self, channel_type: str) -> bool:
    return self._normalize_code(channel_type) in self._adapters

  def channel_types(self) -> List[str]:
    return sorted(self._adapters)


def build_default_registry() -> AdapterRegistry:
  registry = AdapterRegistry()
  for adapter in (
    AgodaChannelProvider(),
    BookingComChannelProvider(),
    ExpediaChannelProvider(),
    ShareTripChannelProvider(),
    GoZayaanChannelProvider(),
  ):
    registry.register(adapter.channel_type, adapter)
  return registry


_default_registry: Optional[AdapterRegistry] = None


def get_default_registry() -> AdapterRegistry:
  global _default_registry
  if _default_registry is None:
    _default_registry = build_default_registry()
  return _default_registry
