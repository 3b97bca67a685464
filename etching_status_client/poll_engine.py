import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional

from loguru import logger
from etching_status_client.errors import RequestFailed, api_error_message
from etching_status_client.models import (
    OperationStatus,
    PollState,
    PollUpdate,
    UpdateKind,
)
from etching_status_client.status_cache import StatusCache

UpdateCallback = Callable[[PollUpdate], Any]
StatusFetcher = Callable[[str], Awaitable[OperationStatus]]


class Subscription:
    """A caller's interest in one operation key.

    The engine only dispatches to it; once ``cancelled`` is set the engine
    never calls ``callback`` again.
    """

    def __init__(
        self, engine: "PollEngine", key: str, interval: float, callback: UpdateCallback
    ):
        self.key = key
        self.interval = interval
        self.callback = callback
        self.cancelled = False
        self._engine = engine

    def cancel(self) -> None:
        self._engine.unsubscribe(self)

    def __repr__(self) -> str:
        return (
            f"Subscription(key={self.key!r}, interval={self.interval}, "
            f"cancelled={self.cancelled})"
        )


class _PollLoop:
    def __init__(self, key: str, state: PollState):
        self.key = key
        self.state = state
        self.subscribers: list[Subscription] = []
        self.wakeup = asyncio.Event()
        self.task: Optional[asyncio.Task] = None
        self.fetches = 0

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


class PollEngine:
    """Polls operation status per key until a terminal stage or cancellation.

    One loop per key no matter how many subscribers it has. The next fetch is
    scheduled ``interval`` seconds after the previous one completed; with
    several subscribers the shortest interval wins. A failed fetch is reported
    as a transient error and polling carries on; only a terminal stage
    reported by the remote operation ends the loop.
    """

    def __init__(
        self,
        fetch: StatusFetcher,
        is_terminal: Callable[[str], bool],
        cache: Optional[StatusCache] = None,
        default_interval: float = 5.0,
        log=None,
    ):
        self._fetch = fetch
        self._is_terminal = is_terminal
        self.cache = cache if cache is not None else StatusCache()
        self.default_interval = default_interval
        self.logger = log or logger
        self._loops: dict[str, _PollLoop] = {}

    def state(self, key: str) -> PollState:
        loop = self._loops.get(key)
        return loop.state if loop is not None else PollState.idle

    def active_keys(self) -> list[str]:
        return [k for k, loop in self._loops.items() if loop.state == PollState.polling]

    async def subscribe(
        self,
        key: str,
        on_update: UpdateCallback,
        interval: Optional[float] = None,
    ) -> Subscription:
        """Attach ``on_update`` to the polling loop for ``key``, starting it if needed.

        A subscriber joining a key with a known status gets that status right
        away, before any new fetch resolves.
        """
        self._prune()
        subscription = Subscription(
            self,
            key,
            interval if interval is not None else self.default_interval,
            on_update,
        )
        self.cache.add_subscriber(key)
        cached = self.cache.get_or_create(key)

        loop = self._loops.get(key)
        if loop is not None and loop.state == PollState.cancelled and loop.running:
            # Still finishing a fetch: resume it rather than start a second loop
            self.logger.debug(f"Resuming poll for {key}")
            loop.state = PollState.polling
        reusable = loop is not None and (
            loop.state == PollState.polling
            or (loop.state == PollState.terminal and cached.terminal)
        )
        if not reusable:
            state = PollState.terminal if cached.terminal else PollState.polling
            loop = _PollLoop(key, state)
            self._loops[key] = loop
        loop.subscribers.append(subscription)

        if not cached.is_placeholder:
            kind = UpdateKind.terminal if cached.terminal else UpdateKind.status
            await self._deliver(
                subscription,
                PollUpdate(kind=kind, key=key, status=cached.model_copy(deep=True)),
            )

        if loop.state == PollState.polling and loop.task is None:
            loop.task = asyncio.create_task(self._run(loop), name=f"poll:{key}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription.cancelled:
            return
        subscription.cancelled = True
        key = subscription.key
        self.cache.remove_subscriber(key)

        loop = self._loops.get(key)
        if loop is not None and subscription in loop.subscribers:
            loop.subscribers.remove(subscription)
            if not loop.subscribers:
                if loop.state == PollState.polling:
                    self.logger.debug(f"Last subscriber left {key}, stopping poll")
                    loop.state = PollState.cancelled
                    loop.wakeup.set()
                elif loop.state == PollState.terminal:
                    del self._loops[key]
        self._prune()

    async def close(self) -> None:
        """Cancel every loop and wait for their tasks to finish."""
        tasks = []
        for loop in self._loops.values():
            for subscription in loop.subscribers:
                subscription.cancelled = True
            if loop.state == PollState.polling:
                loop.state = PollState.cancelled
            loop.wakeup.set()
            if loop.task is not None and not loop.task.done():
                loop.task.cancel()
                tasks.append(loop.task)
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loops.clear()

    def _prune(self) -> None:
        self.cache.sweep()
        stale = [
            key
            for key, loop in self._loops.items()
            if loop.state != PollState.polling
            and not loop.subscribers
            and not loop.running
            and key not in self.cache
        ]
        for key in stale:
            del self._loops[key]

    def _interval(self, loop: _PollLoop) -> float:
        intervals = [s.interval for s in loop.subscribers if not s.cancelled]
        return min(intervals) if intervals else self.default_interval

    async def _run(self, loop: _PollLoop) -> None:
        key = loop.key
        log = self.logger.bind(operation=key)
        log.debug(f"Polling {key} started")
        try:
            while loop.state == PollState.polling:
                loop.fetches += 1
                try:
                    status = await self._fetch(key)
                except Exception as e:
                    if loop.state != PollState.polling:
                        break
                    if isinstance(e, RequestFailed):
                        log.warning(f"Status fetch for {key} failed: {e}")
                        failure = e.outcome
                    else:
                        log.exception(f"Unexpected error fetching status for {key}")
                        failure = None
                    await self._fan_out(
                        loop,
                        PollUpdate(
                            kind=UpdateKind.transient_error,
                            key=key,
                            error=api_error_message(e),
                            failure=failure,
                        ),
                    )
                else:
                    if loop.state != PollState.polling:
                        log.debug(f"Discarding status for {key} fetched after cancellation")
                        break
                    status.terminal = status.stage is not None and self._is_terminal(
                        status.stage
                    )
                    cached = self.cache.get_or_create(key)
                    # The remote only bumps its timestamp on a stage change, so
                    # an equal timestamp is a repeat of the cached status
                    repeat = (
                        status.last_updated_at is not None
                        and status.last_updated_at == cached.last_updated_at
                    )
                    if self.cache.update(key, status) or repeat:
                        current = cached.model_copy(deep=True)
                        if current.terminal:
                            loop.state = PollState.terminal
                            await self._fan_out(
                                loop,
                                PollUpdate(
                                    kind=UpdateKind.terminal, key=key, status=current
                                ),
                            )
                            break
                        await self._fan_out(
                            loop,
                            PollUpdate(kind=UpdateKind.status, key=key, status=current),
                        )

                if loop.state != PollState.polling:
                    break
                await self._wait(loop)
        finally:
            log.debug(
                f"Polling {key} stopped ({loop.state.value}) after {loop.fetches} fetches"
            )

    async def _wait(self, loop: _PollLoop) -> None:
        loop.wakeup.clear()
        try:
            await asyncio.wait_for(loop.wakeup.wait(), timeout=self._interval(loop))
        except asyncio.TimeoutError:
            pass

    async def _fan_out(self, loop: _PollLoop, update: PollUpdate) -> None:
        for subscription in list(loop.subscribers):
            await self._deliver(subscription, update)

    async def _deliver(self, subscription: Subscription, update: PollUpdate) -> None:
        if subscription.cancelled:
            return
        try:
            result = subscription.callback(update)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self.logger.exception(f"Subscriber callback for {subscription.key} raised")
