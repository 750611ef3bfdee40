"""Tests for the webhook notifier, its circuit breaker and the tick scheduler."""

import json

import httpx
import pytest

from grievance.escalation.infrastructure import (
    CircuitBreaker,
    CircuitState,
    EscalationScheduler,
    WebhookNotifier,
)

WEBHOOK = "https://notify.example.test/hooks/escalations"


class FakeMonotonic:
    def __init__(self):
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


def recording_client(status_code=200, error=None):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if error is not None:
            raise error
        return httpx.Response(status_code, json={"ok": status_code < 400})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), requests


class TestWebhookNotifier:
    @pytest.mark.asyncio
    async def test_delivers_message(self):
        client, requests = recording_client()
        notifier = WebhookNotifier(WEBHOOK, client=client)

        delivered = await notifier.notify("issue_escalated", ["role:admin"], {"issue_id": 7})

        assert delivered is True
        assert len(requests) == 1
        body = json.loads(requests[0].content)
        assert body["kind"] == "issue_escalated"
        assert body["recipients"] == ["role:admin"]
        assert body["payload"] == {"issue_id": 7}
        assert "sent_at" in body
        await client.aclose()

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        client, requests = recording_client(status_code=500)
        notifier = WebhookNotifier(WEBHOOK, client=client, max_retries=3, backoff_base=0)

        assert await notifier.notify("issue_assigned", ["user:1"], {"issue_id": 7}) is False
        assert len(requests) == 3
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_errors_are_swallowed(self):
        client, requests = recording_client(error=httpx.ConnectError("refused"))
        notifier = WebhookNotifier(WEBHOOK, client=client, max_retries=2, backoff_base=0)

        assert await notifier.notify("issue_assigned", ["user:1"], {}) is False
        assert len(requests) == 2
        await client.aclose()

    @pytest.mark.asyncio
    async def test_without_url_nothing_is_sent(self):
        client, requests = recording_client()
        notifier = WebhookNotifier(None, client=client)

        assert await notifier.notify("issue_assigned", ["user:1"], {}) is False
        assert requests == []
        await client.aclose()

    @pytest.mark.asyncio
    async def test_open_circuit_skips_delivery(self):
        client, requests = recording_client(status_code=503)
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60, clock=FakeMonotonic())
        notifier = WebhookNotifier(
            WEBHOOK, client=client, max_retries=1, backoff_base=0, circuit_breaker=breaker
        )

        await notifier.notify("issue_assigned", ["user:1"], {})
        await notifier.notify("issue_assigned", ["user:1"], {})
        assert breaker.state == CircuitState.OPEN

        assert await notifier.notify("issue_assigned", ["user:1"], {}) is False
        assert len(requests) == 2
        await client.aclose()

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self):
        client, _ = recording_client()
        notifier = WebhookNotifier(WEBHOOK, client=client)
        await notifier.close()
        assert not client.is_closed
        await client.aclose()


class TestCircuitBreaker:
    def test_half_open_after_recovery_timeout(self):
        clock = FakeMonotonic()
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=clock)

        breaker.record_failure()
        assert not breaker.allow_request()

        clock.value = 30
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request()

    def test_failed_trial_reopens(self):
        clock = FakeMonotonic()
        breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=30, clock=clock)
        for _ in range(3):
            breaker.record_failure()

        clock.value = 31
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

    def test_success_closes(self):
        clock = FakeMonotonic()
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=10, clock=clock)
        breaker.record_failure()
        clock.value = 10
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED


class TestEscalationScheduler:
    @pytest.mark.asyncio
    async def test_zero_interval_disables(self):
        scheduler = EscalationScheduler(interval_seconds=0)

        async def job():
            pass

        await scheduler.start(job)
        assert not scheduler.is_running
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        scheduler = EscalationScheduler(interval_seconds=3600)

        async def job():
            pass

        await scheduler.start(job)
        assert scheduler.is_running
        await scheduler.stop()
        assert not scheduler.is_running
