# Overview: Connectivity probes and a polling monitor that reports online/offline transitions.

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Protocol, Union

import httpx

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Union[None, Awaitable[None]]]


class ConnectivityProbe(Protocol):
    async def is_online(self) -> bool:
        ...


class StaticConnectivityProbe:
    """Probe with a fixed answer, flipped by hand (tests, `flask offline run --assume-online`)."""

    def __init__(self, online: bool = True):
        self.online = online

    def set_online(self, online: bool) -> None:
        self.online = online

    async def is_online(self) -> bool:
        return self.online


class HttpConnectivityProbe:
    """Online means GET <server>/api/health answered with a 2xx."""

    def __init__(self, health_url: str, *, timeout: float = 5.0,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.health_url = health_url
        self.timeout = timeout
        self._transport = transport

    async def is_online(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.health_url)
        except httpx.HTTPError as exc:
            logger.debug("Connectivity probe failed: %s", exc)
            return False
        return response.is_success


class ConnectivityMonitor:
    """
    Polls a probe and calls listeners on every transition.

    The first poll establishes the state without notifying.
    """

    def __init__(self, probe: ConnectivityProbe, *, interval: float = 10.0):
        self.probe = probe
        self.interval = interval
        self.online: bool | None = None
        self._listeners: list[ConnectivityListener] = []
        self._task: asyncio.Task | None = None

    def add_listener(self, listener: ConnectivityListener) -> None:
        self._listeners.append(listener)

    async def check(self) -> bool:
        online = await self.probe.is_online()
        previous, self.online = self.online, online
        if previous is not None and previous != online:
            logger.info("Connectivity changed: %s", "online" if online else "offline")
            for listener in list(self._listeners):
                result = listener(online)
                if inspect.isawaitable(result):
                    await result
        return online

    async def _run(self) -> None:
        while True:
            try:
                await self.check()
            except Exception:
                logger.exception("Connectivity check failed")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
