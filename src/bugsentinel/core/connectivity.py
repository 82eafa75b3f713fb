"""Network reachability tracking with online/offline transition listeners."""

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, List, Optional

from bugsentinel.config.settings import Settings

Probe = Callable[[], Awaitable[bool]]
Listener = Callable[[], None]


class ConnectivityMonitor:
    """
    Periodically probes the backend and reports transitions.

    Listeners fire only when the reachability flag actually changes, so a run
    of failed probes produces a single ``offline`` notification.
    """

    def __init__(
        self,
        probe: Optional[Probe] = None,
        initial: bool = False,
        interval: float = Settings.CONNECTIVITY_CHECK_INTERVAL,
        probe_timeout: float = Settings.CONNECTIVITY_PROBE_TIMEOUT,
        logger_obj: Optional[logging.Logger] = None,
    ):
        self.probe = probe
        self.interval = interval
        self.probe_timeout = probe_timeout
        self.logger = logger_obj or logging.getLogger(__name__)
        self._online = initial
        self._online_listeners: List[Listener] = []
        self._offline_listeners: List[Listener] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def on_online(self, callback: Listener) -> Callable[[], None]:
        return self._register(self._online_listeners, callback)

    def on_offline(self, callback: Listener) -> Callable[[], None]:
        return self._register(self._offline_listeners, callback)

    @staticmethod
    def _register(listeners: List[Listener], callback: Listener) -> Callable[[], None]:
        listeners.append(callback)

        def unsubscribe() -> None:
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def set_online(self, value: bool) -> None:
        """Record reachability, notifying listeners on a transition."""
        if value == self._online:
            return
        self._online = value
        self.logger.info(f"Connectivity changed: {'online' if value else 'offline'}")
        for listener in list(self._online_listeners if value else self._offline_listeners):
            try:
                listener()
            except Exception as e:
                self.logger.error(f"Connectivity listener failed: {e}", exc_info=True)

    async def check(self) -> bool:
        """Run one probe and apply its result."""
        if self.probe is None:
            return self._online
        try:
            reachable = await asyncio.wait_for(self.probe(), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            reachable = False
        self.set_online(bool(reachable))
        return self._online

    async def _run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        """Start the probe loop on the running event loop."""
        if self.running or self.probe is None:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
