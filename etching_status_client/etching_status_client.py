import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote

import aiohttp
from loguru import logger
from etching_status_client.errors import InvalidStatusPayload
from etching_status_client.log_sink import RemoteLogSink
from etching_status_client.models import (
    ApiResponse,
    ClientConfig,
    EtchingStage,
    OperationStatus,
    PollUpdate,
)
from etching_status_client.pipeline import RequestPipeline
from etching_status_client.poll_engine import PollEngine, Subscription, UpdateCallback
from etching_status_client.status_cache import StatusCache


def is_final_stage(stage: str) -> bool:
    try:
        return EtchingStage(stage).is_final
    except ValueError:
        return False


class EtchingStatusClient:
    def __init__(
        self,
        config: ClientConfig,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.logger = logger.bind(client=config.client_name)
        self.pipeline = RequestPipeline(config, session=session, sleep=sleep)
        self.cache = StatusCache(idle_timeout=config.cache_idle_timeout)
        self.engine = PollEngine(
            self.fetch_status,
            is_final_stage,
            cache=self.cache,
            default_interval=config.poll_interval,
            log=self.logger,
        )
        self._sink_id: Optional[int] = None
        if config.log_endpoint:
            sink = RemoteLogSink(
                config.log_endpoint,
                client_context={
                    "client": config.client_name,
                    "base_url": self.pipeline.base_url,
                },
            )
            self._sink_id = sink.install(
                level=config.log_level, client_name=config.client_name
            )

    async def __aenter__(self) -> "EtchingStatusClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self.engine.close()
        await self.pipeline.close()
        if self._sink_id is not None:
            await logger.complete()
            logger.remove(self._sink_id)
            self._sink_id = None

    def _parse_status(self, process_id: str, response: ApiResponse) -> OperationStatus:
        data = response.data
        if not isinstance(data, dict) or "state" not in data:
            raise InvalidStatusPayload(f"Unexpected status payload for {process_id}: {data!r}")
        try:
            stage = EtchingStage(data["state"])
        except ValueError:
            raise InvalidStatusPayload(
                f"Unknown etching state {data['state']!r} for {process_id}"
            ) from None

        # Remote timestamps are nanoseconds; fall back to the local clock
        updated_at = data.get("updated_at")
        return OperationStatus(
            key=process_id,
            stage=stage.value,
            last_updated_at=int(updated_at) if updated_at is not None else time.time_ns(),
            terminal=stage.is_final,
            payload=data,
        )

    def _log_transition(self, status: OperationStatus) -> None:
        previous = self.cache.get(status.key)
        if previous is not None and previous.stage == status.stage:
            return
        log = self.logger.bind(operation=status.key, stage=status.stage)
        if status.stage == EtchingStage.failed.value:
            log.error(f"Etching {status.key} failed")
        else:
            log.info(f"Etching {status.key} is now {status.stage}")

    async def fetch_status(self, process_id: str) -> OperationStatus:
        """Fetches the status of an etching process from the server"""
        path = self.config.status_path.format(key=quote(process_id, safe=""))
        response = await self.pipeline.get(path)
        status = self._parse_status(process_id, response)
        self._log_transition(status)
        return status

    def cached_status(self, process_id: str) -> Optional[OperationStatus]:
        status = self.cache.get(process_id)
        if status is None or status.is_placeholder:
            return None
        return status.model_copy(deep=True)

    async def subscribe(
        self,
        process_id: str,
        on_update: UpdateCallback,
        interval: Optional[float] = None,
    ) -> Subscription:
        return await self.engine.subscribe(process_id, on_update, interval=interval)

    async def poll_until_complete(
        self,
        process_id: str,
        timeout: Optional[float] = None,
        on_update: Optional[UpdateCallback] = None,
    ) -> OperationStatus:
        """Poll the process until it reaches a final stage and return that status"""
        done: asyncio.Future = asyncio.get_running_loop().create_future()

        async def _on_update(update: PollUpdate) -> None:
            if update.is_terminal and not done.done():
                done.set_result(update.status)
            if on_update is not None:
                result = on_update(update)
                if inspect.isawaitable(result):
                    await result

        subscription = await self.engine.subscribe(process_id, _on_update)
        try:
            return await asyncio.wait_for(done, timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(
                f"Etching {process_id} did not complete within {timeout} seconds"
            ) from None
        finally:
            subscription.cancel()
