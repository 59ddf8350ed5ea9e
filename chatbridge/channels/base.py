"""Base channel service. One instance per configured service entry."""

from __future__ import annotations

from abc import ABC, abstractmethod

from chatbridge.core.delivery import DeliveryScheduler


class ChannelService(ABC):
    """start() connects, run() blocks until stop() or a fatal disconnect, stop() is idempotent."""

    kind: str = ""

    def __init__(self, name: str) -> None:
        self.name = name
        self._schedulers: set[DeliveryScheduler] = set()

    @abstractmethod
    async def start(self) -> None:
        pass

    @abstractmethod
    async def run(self) -> None:
        pass

    @abstractmethod
    async def stop(self) -> None:
        pass

    def track(self, scheduler: DeliveryScheduler) -> DeliveryScheduler:
        self._schedulers.add(scheduler)
        return scheduler

    def untrack(self, scheduler: DeliveryScheduler) -> None:
        self._schedulers.discard(scheduler)

    def cancel_deliveries(self) -> None:
        """Cancel armed trailing writes. In-flight completion requests are left to finish."""
        for scheduler in list(self._schedulers):
            scheduler.cancel()
        self._schedulers.clear()
