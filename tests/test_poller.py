import asyncio

import pytest

from forge3d.exceptions import PollingTimeoutError, UpstreamProviderError
from forge3d.generation.poller import TaskPoller

class FakeClock:
    def __init__(self):
        self.sleeps = []

    async def sleep(self, seconds):
        self.sleeps.append(seconds)

def scripted(*responses):
    """Return a fetch function that plays back payloads, raising the exceptions among them."""
    queue = list(responses)

    async def fetch():
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item
    return fetch

class TestTaskPoller:
    @pytest.mark.asyncio
    async def test_returns_terminal_payload(self):
        clock = FakeClock()
        fetch = scripted({"status": "PENDING"}, {"status": "IN_PROGRESS"}, {"status": "SUCCEEDED", "id": "t"})

        payload = await TaskPoller(fetch, "t", poll_interval=3, error_interval=5, sleep=clock.sleep).run()

        assert payload == {"status": "SUCCEEDED", "id": "t"}
        assert clock.sleeps == [3, 3]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["FAILED", "EXPIRED", "CANCELED"])
    async def test_failed_statuses_are_terminal(self, status):
        clock = FakeClock()
        payload = await TaskPoller(scripted({"status": status}), sleep=clock.sleep).run()
        assert payload["status"] == status
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_errors_use_the_error_interval(self):
        clock = FakeClock()
        fetch = scripted(
            UpstreamProviderError("meshy", "boom", status_code=502),
            {"status": "PENDING"},
            {"status": "SUCCEEDED"},
        )

        await TaskPoller(fetch, poll_interval=3, error_interval=5, sleep=clock.sleep).run()

        assert clock.sleeps == [5, 3]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        clock = FakeClock()
        fetch = scripted(*[{"status": "PENDING"}] * 21)

        poller = TaskPoller(fetch, "t-1", poll_interval=3, error_interval=5, max_attempts=20, sleep=clock.sleep)
        with pytest.raises(PollingTimeoutError) as exc_info:
            await poller.run()

        assert len(clock.sleeps) == 20
        assert exc_info.value.task_id == "t-1"
        assert poller.retries == 20

    @pytest.mark.asyncio
    async def test_can_be_cancelled(self):
        async def never_done():
            return {"status": "PENDING"}

        poller = TaskPoller(never_done, poll_interval=10, max_attempts=100)
        task = asyncio.ensure_future(poller.run())
        await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
