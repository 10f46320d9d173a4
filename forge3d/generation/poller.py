import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from ..config import settings
from ..exceptions import PollingTimeoutError, UpstreamProviderError
from .providers import is_terminal

logger = logging.getLogger(__name__)

FetchStatus = Callable[[], Awaitable[Dict[str, Any]]]

class TaskPoller:
    """Poll a provider task until it reaches a terminal status.

    Non-terminal reads wait ``poll_interval`` before the next attempt, failed
    reads wait ``error_interval``. After ``max_attempts`` retries the poller
    gives up with ``PollingTimeoutError``. Polling only reads, so it is safe to
    run several pollers for the same task. Cancel the awaiting task to stop.
    """

    def __init__(
        self,
        fetch: FetchStatus,
        task_id: str = "",
        poll_interval: Optional[float] = None,
        error_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.fetch = fetch
        self.task_id = task_id
        self.poll_interval = settings.poll_interval_seconds if poll_interval is None else poll_interval
        self.error_interval = settings.poll_error_interval_seconds if error_interval is None else error_interval
        self.max_attempts = settings.poll_max_attempts if max_attempts is None else max_attempts
        self.sleep = sleep
        self.retries = 0

    async def run(self) -> Dict[str, Any]:
        self.retries = 0
        while True:
            try:
                payload = await self.fetch()
            except UpstreamProviderError as e:
                logger.warning(f"Status check for task {self.task_id} failed: {e.message}")
                delay = self.error_interval
            else:
                if is_terminal(payload.get("status")):
                    logger.info(f"Task {self.task_id} finished with status {payload.get('status')}")
                    return payload
                delay = self.poll_interval

            if self.retries >= self.max_attempts:
                raise PollingTimeoutError(self.task_id, self.retries + 1)
            self.retries += 1
            await self.sleep(delay)
