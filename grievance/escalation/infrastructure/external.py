"""
Escalation External Service Integrations
========================================

External services for the escalation engine:
- YAML escalation policy with file watcher
- Webhook notifier for escalation and assignment messages
- APScheduler for the periodic escalation tick
"""

import asyncio
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from grievance.core import ConfigurationException, NotificationException
from grievance.escalation.application.services import IEscalationPolicyProvider, INotifier
from grievance.escalation.domain import EscalationPolicy
from grievance.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class PolicyFileHandler(FileSystemEventHandler):
    """Watchdog event handler for escalation policy file changes."""

    def __init__(self, manager: "EscalationPolicyManager", policy_path: Path):
        self.manager = manager
        self.policy_path = policy_path
        super().__init__()

    def _matches(self, path: str) -> bool:
        return Path(path).resolve() == self.policy_path.resolve()

    def on_modified(self, event):
        if event.is_directory:
            return
        if self._matches(event.src_path):
            logger.info(f"Escalation policy changed: {event.src_path}")
            self.manager.reload()

    def on_created(self, event):
        # Editors that save by rename produce a create event.
        self.on_modified(event)


class EscalationPolicyManager(IEscalationPolicyProvider):
    """
    Thread-safe escalation policy provider with hot-reload support.

    Uses watchdog to monitor the YAML file. A reload that fails validation
    keeps the previous policy in place.
    """

    def __init__(self):
        self._policy: Optional[EscalationPolicy] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> EscalationPolicy:
        """
        Initial policy load.

        Raises:
            ConfigurationException: If the file exists but is not a valid policy
        """
        self._path = Path(path)
        policy = self._load_from_file(self._path)
        with self._lock:
            self._policy = policy
        logger.info(
            "Escalation policy loaded",
            extra={"path": str(self._path), "priorities": sorted(policy.thresholds)}
        )
        return policy

    def _load_from_file(self, path: Path) -> EscalationPolicy:
        if not path.exists():
            logger.warning(f"Escalation policy file not found: {path}, using defaults")
            return EscalationPolicy()

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
            return EscalationPolicy(**data)
        except (yaml.YAMLError, ValidationError, TypeError) as e:
            raise ConfigurationException(
                f"Invalid escalation policy in {path}: {e}",
                {"path": str(path)}
            ) from e

    def reload(self) -> bool:
        """Reload the policy from file."""
        if self._path is None:
            return False

        try:
            policy = self._load_from_file(self._path)
        except ConfigurationException as e:
            logger.error(f"Failed to reload escalation policy: {e.message}")
            return False

        with self._lock:
            self._policy = policy
        logger.info("Escalation policy reloaded successfully")
        return True

    def start_watching(self) -> None:
        """Start watching the policy file; skipped when the file is absent."""
        if self._path is None:
            raise RuntimeError("Policy not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(f"Policy file doesn't exist, skipping file watch: {self._path}")
            return

        try:
            self._observer = Observer()
            self._observer.schedule(
                PolicyFileHandler(self, self._path),
                str(self._path.parent),
                recursive=False
            )
            self._observer.start()
            logger.info(f"Started watching escalation policy: {self._path}")
        except OSError as e:
            logger.warning(f"File watching not available, using static policy: {e}")
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_policy(self) -> EscalationPolicy:
        with self._lock:
            if self._policy is None:
                raise RuntimeError("Escalation policy not loaded")
            return self._policy


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for the notifier.

    Opens after `failure_threshold` consecutive failed deliveries and lets
    one trial request through once `recovery_timeout` seconds have passed.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._opened_at = None
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class WebhookNotifier(INotifier):
    """
    Delivers notifications to an external service over an HTTP webhook.

    Returns False instead of raising: notification failures never reach
    the escalation flow.
    """

    def __init__(
        self,
        webhook_url: Optional[str],
        timeout_seconds: float = 5.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self._webhook_url = webhook_url
        self._timeout = timeout_seconds
        self._max_retries = max(1, max_retries)
        self._backoff_base = backoff_base
        self._http_client = client
        self._owns_client = client is None
        self._circuit_breaker = circuit_breaker or CircuitBreaker()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    @staticmethod
    def _build_message(kind: str, recipients: List[str], payload: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "kind": kind,
            "recipients": recipients,
            "payload": payload,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }

    async def notify(self, kind: str, recipients: List[str], payload: Dict[str, Any]) -> bool:
        """
        Send a notification.

        Returns:
            True if the webhook accepted it, False otherwise
        """
        if not self._webhook_url:
            logger.debug("Notifier webhook URL not configured, skipping notification")
            return False

        if not self._circuit_breaker.allow_request():
            logger.warning(
                "Circuit breaker open, skipping notification",
                extra={"kind": kind, "issue_id": payload.get("issue_id")}
            )
            return False

        message = self._build_message(kind, recipients, payload)

        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._webhook_url, json=message)

                if not response.is_success:
                    raise NotificationException(
                        f"webhook returned {response.status_code}",
                        {"status_code": response.status_code}
                    )

                self._circuit_breaker.record_success()
                logger.info(
                    "Notification sent",
                    extra={"kind": kind, "issue_id": payload.get("issue_id")}
                )
                return True
            except (httpx.HTTPError, NotificationException) as e:
                logger.error(
                    "Notification failed",
                    extra={"error": str(e), "attempt": attempt + 1, "kind": kind}
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._backoff_base * 2 ** attempt)

        self._circuit_breaker.record_failure()
        return False

    async def close(self) -> None:
        """Close the HTTP client if this notifier created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None


class EscalationScheduler:
    """
    Wrapper for APScheduler running the escalation tick.

    One job with `max_instances=1`: ticks never overlap.
    """

    JOB_ID = "escalation_tick"

    def __init__(self, interval_seconds: int = 900):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[Any]]) -> None:
        """Start the scheduler; an interval of 0 leaves it stopped."""
        if self._running:
            logger.warning("Escalation scheduler already running")
            return

        if self.interval_seconds <= 0:
            logger.info("Escalation scheduler disabled")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id=self.JOB_ID,
            name="Escalation Tick",
            misfire_grace_time=60,
            coalesce=True,
            max_instances=1,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info(
            "Escalation scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Escalation scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
