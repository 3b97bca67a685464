import asyncio
import itertools
import json
import random
import time
from collections import defaultdict
from datetime import datetime
from typing import Optional

from aiohttp import web
from loguru import logger

HAPPY_PATH = [
    "Pending",
    "SelectingUtxos",
    "BuildingTransaction",
    "SigningTransaction",
    "Broadcasting",
    "AwaitingConfirmation",
    "Completed",
]


class EtchingServer:
    """Stand-in for the etching status API.

    Processes either follow a scripted list of states (one per request, the
    last one repeating) or, with ``auto_progress``, walk the happy path one
    stage every ``step_time`` seconds. Failures can be queued per process, and
    ``error_rate`` randomly answers 500 or 429. Like the real service,
    ``updated_at`` only moves when a process changes state.
    """

    def __init__(
        self,
        step_time: float = 2.0,
        error_rate: float = 0.0,
        auto_progress: bool = False,
    ):
        self.step_time = step_time
        self.error_rate = error_rate
        self.auto_progress = auto_progress
        self.scripts: dict[str, list[str]] = {}
        self.failures: dict[str, list[tuple[int, dict[str, str]]]] = defaultdict(list)
        self.requests: dict[str, list[dict[str, str]]] = defaultdict(list)
        self.started_at: dict[str, datetime] = {}
        self.logs: list[dict] = []
        self.log_status = 200
        self.stalls: dict[str, int] = defaultdict(int)
        self._served: dict[str, int] = defaultdict(int)
        self._updated: dict[str, tuple[str, int]] = {}
        self._clock = itertools.count(time.time_ns())
        self._release: Optional[asyncio.Event] = None
        self.runner: Optional[web.AppRunner] = None
        self.app = web.Application()
        self.app.router.add_get("/etchings/{process_id}", self.handle_status)
        self.app.router.add_post("/logs", self.handle_logs)
        self.logger = logger

    def script(self, process_id: str, states: list[str]) -> None:
        self.scripts[process_id] = list(states)

    def fail_next(
        self,
        process_id: str,
        status: int,
        times: int = 1,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        self.failures[process_id].extend([(status, headers or {})] * times)

    def stall_next(self, process_id: str, times: int = 1) -> None:
        """Send headers and half the body, then hang until the server stops."""
        self.stalls[process_id] += times

    def request_count(self, process_id: str) -> int:
        return len(self.requests[process_id])

    def _updated_at(self, process_id: str, state: str) -> int:
        previous = self._updated.get(process_id)
        if previous is None or previous[0] != state:
            previous = (state, next(self._clock))
            self._updated[process_id] = previous
        return previous[1]

    async def _stall(self, request: web.Request, body: dict) -> web.StreamResponse:
        raw = json.dumps(body).encode()
        response = web.StreamResponse(headers={"Content-Type": "application/json"})
        response.content_length = len(raw)
        await response.prepare(request)
        await response.write(raw[: len(raw) // 2])
        await self._release.wait()
        return response

    def _next_state(self, process_id: str) -> Optional[str]:
        if process_id in self.scripts:
            states = self.scripts[process_id]
            state = states[min(self._served[process_id], len(states) - 1)]
            self._served[process_id] += 1
            return state
        if self.auto_progress:
            started = self.started_at.setdefault(process_id, datetime.now())
            elapsed = (datetime.now() - started).total_seconds()
            return HAPPY_PATH[min(int(elapsed // self.step_time), len(HAPPY_PATH) - 1)]
        return None

    async def handle_status(self, request: web.Request) -> web.Response:
        process_id = request.match_info["process_id"]
        self.requests[process_id].append(dict(request.headers))

        if self.failures[process_id]:
            status, headers = self.failures[process_id].pop(0)
            self.logger.info(f"Returning injected {status} for {process_id}")
            return web.json_response(
                {"message": f"Injected failure {status}"}, status=status, headers=headers
            )

        if random.random() < self.error_rate:
            if random.random() < 0.5:
                self.logger.info("Returning rate limit")
                return web.json_response(
                    {"message": "Too many requests"},
                    status=429,
                    headers={"Retry-After": "1"},
                )
            self.logger.info("Returning server error")
            return web.json_response({"message": "Internal error"}, status=500)

        state = self._next_state(process_id)
        if state is None:
            return web.json_response(
                {"message": f"Etching process {process_id} not found"}, status=404
            )

        body = {
            "id": process_id,
            "rune_name": f"RUNE•{process_id.upper()}",
            "state": state,
            "updated_at": self._updated_at(process_id, state),
            "retry_count": 0,
            "txid": [],
        }
        if self.stalls[process_id]:
            self.stalls[process_id] -= 1
            self.logger.info(f"Stalling {state} for {process_id}")
            return await self._stall(request, body)

        self.logger.info(f"Returning {state} for {process_id}")
        return web.json_response(body)

    async def handle_logs(self, request: web.Request) -> web.Response:
        payload = await request.json()
        if not payload.get("level") or not payload.get("message"):
            return web.json_response({"error": "Invalid log payload"}, status=400)
        if self.log_status >= 400:
            return web.json_response({"error": "Log storage down"}, status=self.log_status)
        self.logs.append(payload)
        return web.json_response({"success": True})

    async def start(self, port: int = 8080):
        self._release = asyncio.Event()
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self._release is not None:
            self._release.set()
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
