"""Tests for the connectivity monitor."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from bugsentinel.core.connectivity import ConnectivityMonitor


class TestTransitions:
    """Test listener notification on reachability changes."""

    def test_listeners_fire_only_on_change(self):
        monitor = ConnectivityMonitor(initial=False)
        online, offline = MagicMock(), MagicMock()
        monitor.on_online(online)
        monitor.on_offline(offline)

        monitor.set_online(False)
        monitor.set_online(True)
        monitor.set_online(True)
        monitor.set_online(False)

        assert online.call_count == 1
        assert offline.call_count == 1
        assert not monitor.is_online

    def test_unsubscribe(self):
        monitor = ConnectivityMonitor()
        listener = MagicMock()
        unsubscribe = monitor.on_online(listener)

        unsubscribe()
        unsubscribe()
        monitor.set_online(True)

        listener.assert_not_called()

    def test_failing_listener_does_not_stop_others(self):
        monitor = ConnectivityMonitor()
        after = MagicMock()
        monitor.on_online(MagicMock(side_effect=RuntimeError("boom")))
        monitor.on_online(after)

        monitor.set_online(True)

        after.assert_called_once()


class TestProbe:
    """Test probing."""

    @pytest.mark.asyncio
    async def test_check_applies_probe_result(self):
        monitor = ConnectivityMonitor(probe=AsyncMock(return_value=False), initial=True)
        offline = MagicMock()
        monitor.on_offline(offline)

        assert await monitor.check() is False
        offline.assert_called_once()

    @pytest.mark.asyncio
    async def test_slow_probe_counts_as_offline(self):
        async def hang():
            await asyncio.sleep(1)
            return True

        monitor = ConnectivityMonitor(probe=hang, initial=True, probe_timeout=0.01)

        assert await monitor.check() is False

    @pytest.mark.asyncio
    async def test_check_without_probe_keeps_current_value(self):
        monitor = ConnectivityMonitor(initial=True)
        assert await monitor.check() is True

    @pytest.mark.asyncio
    async def test_background_loop(self):
        probe = AsyncMock(return_value=True)
        monitor = ConnectivityMonitor(probe=probe, interval=0.01)

        monitor.start()
        await asyncio.sleep(0.05)

        assert monitor.running
        assert monitor.is_online
        assert probe.await_count >= 2

        await monitor.stop()
        assert not monitor.running

    @pytest.mark.asyncio
    async def test_start_without_probe_does_nothing(self):
        monitor = ConnectivityMonitor()
        monitor.start()
        assert not monitor.running
        await monitor.stop()
