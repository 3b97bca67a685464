import asyncio
import traceback
from typing import Any, Optional

import aiohttp
from loguru import logger
from etching_status_client.models import ErrorInfo, LogPayload

_PLAIN_TYPES = (str, int, float, bool, type(None))


def _jsonable(value: Any) -> Any:
    if isinstance(value, _PLAIN_TYPES):
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return str(value)


class RemoteLogSink:
    """Loguru sink that POSTs each record to a logging endpoint.

    Delivery is best effort: ``deliver`` reports failure through its return
    value and never raises, so a broken endpoint cannot break the caller.
    """

    def __init__(
        self,
        endpoint: str,
        client_context: Optional[dict[str, Any]] = None,
        timeout: float = 5.0,
    ):
        self.endpoint = endpoint
        self.client_context = client_context or {}
        self.timeout = timeout

    async def __call__(self, message) -> None:
        await self.deliver(self.build_payload(message.record))

    def install(self, level: str = "WARNING", client_name: Optional[str] = None) -> int:
        """Register with loguru and return the handler id.

        Records logged by this module are never forwarded, nor are records of
        other clients when ``client_name`` is given.
        """

        def _filter(record) -> bool:
            if record["name"] == __name__:
                return False
            return client_name is None or record["extra"].get("client") == client_name

        return logger.add(self, level=level, filter=_filter)

    def build_payload(self, record) -> LogPayload:
        error = None
        exception = record["exception"]
        if exception is not None and exception.value is not None:
            error = ErrorInfo(
                name=exception.type.__name__,
                message=str(exception.value),
                stack="".join(
                    traceback.format_exception(
                        exception.type, exception.value, exception.traceback
                    )
                ),
            )

        context = {k: _jsonable(v) for k, v in record["extra"].items()}
        return LogPayload(
            level=record["level"].name,
            message=record["message"],
            timestamp=record["time"],
            context=context or None,
            error=error,
            client_context={
                **self.client_context,
                "module": record["name"],
                "function": record["function"],
                "line": record["line"],
            },
        )

    async def deliver(self, payload: LogPayload) -> bool:
        body = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as session:
                async with session.post(self.endpoint, json=body) as response:
                    if response.status >= 400:
                        logger.debug(
                            f"Log endpoint {self.endpoint} rejected payload: HTTP {response.status}"
                        )
                        return False
                    return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Failed to send log to {self.endpoint}: {e}")
            return False
