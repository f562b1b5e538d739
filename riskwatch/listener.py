"""
Event Listener and background sweeps.

``EventListener`` subscribes to the change channels and feeds every message
through the engine.  Delivery is at-least-once and not ordered across
channels.  The engine is idempotent, so the listener never deduplicates.

When the subscription drops, the listener reconnects with exponential
backoff (1s base, 30s cap, no retry limit).  After every reconnect it runs a
reconciliation sweep that resubmits every patient whose last assessment is
older than the staleness window, covering notifications missed while
disconnected.

``PeriodicSweeper`` runs the action-item expiry sweep and the reconciliation
sweep on a fixed interval in a daemon thread.
"""

from __future__ import annotations

import threading
import time
import uuid
from typing import Callable, Optional

import structlog
from pydantic import ValidationError

from riskwatch import rbac
from riskwatch.collaborators import ChannelDisconnected, ChannelMessage, ChannelSubscription
from riskwatch.engine import ProcessingResult, RiskWatchEngine
from riskwatch.errors import InvalidPayloadError, InvariantViolation, RiskWatchError
from riskwatch.models import ChangeEvent, Role

logger = structlog.get_logger(__name__)


def parse_change_message(payload: str) -> ChangeEvent:
    """Parse a channel payload into a ``ChangeEvent``.

    Raises:
        InvalidPayloadError: not JSON, or missing/invalid fields.
    """
    try:
        return ChangeEvent.model_validate_json(payload)
    except ValidationError as e:
        raise InvalidPayloadError(f"Unparseable change payload: {e.error_count()} error(s)") from e


class EventListener:
    def __init__(
        self,
        subscription: ChannelSubscription,
        engine: RiskWatchEngine,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._subscription = subscription
        self._engine = engine
        self._settings = engine.settings.listener
        self._sleep = sleep
        self.messages_processed = 0
        self.reconnects = 0

    def handle_message(self, message: ChannelMessage) -> Optional[ProcessingResult]:
        """Process one raw channel message under a fresh correlation id."""
        correlation_id = str(uuid.uuid4())
        with structlog.contextvars.bound_contextvars(
            correlation_id=correlation_id, channel=message.channel
        ):
            try:
                event = parse_change_message(message.payload)
            except InvalidPayloadError as e:
                logger.warning("change_message_invalid", error=str(e), payload=message.payload[:200])
                return None

            logger.info(
                "change_message_received",
                patient_id=event.entity_id,
                source=event.source.value,
                occurred_at=event.occurred_at.isoformat(),
            )
            try:
                result = self._engine.process(event, correlation_id)
            except InvariantViolation as e:
                logger.error("change_message_abandoned", patient_id=event.entity_id, error=str(e))
                return None
            except Exception as e:
                # Left for the reconciliation sweep; the listener keeps consuming.
                logger.error(
                    "change_message_failed",
                    patient_id=event.entity_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                return None

            self.messages_processed += 1
            return result

    def reconcile(self) -> list[ProcessingResult]:
        """Run a reconciliation sweep; a failed sweep is logged and yields no results."""
        with structlog.contextvars.bound_contextvars(correlation_id=str(uuid.uuid4())):
            try:
                return self._engine.reconcile()
            except RiskWatchError as e:
                logger.error("listener_reconciliation_failed", error=str(e), error_type=type(e).__name__)
                return []

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        """Consume the channels until the subscription closes or ``stop_event`` is set."""
        stop_event = stop_event or threading.Event()
        channels = list(self._settings.channels)
        attempt = 0
        connected_before = False

        while not stop_event.is_set():
            try:
                messages = self._subscription.listen(channels)
                logger.info("listener_connected", channels=channels, reconnect=connected_before)
                attempt = 0
                if connected_before or self._settings.reconcile_on_start:
                    self.reconcile()
                connected_before = True

                for message in messages:
                    self.handle_message(message)
                    if stop_event.is_set():
                        break
                else:
                    logger.info("listener_channel_closed", channels=channels)
                    return
            except (ChannelDisconnected, ConnectionError) as e:
                attempt += 1
                self.reconnects += 1
                delay = self._settings.reconnect_delay(attempt)
                logger.warning(
                    "listener_disconnected",
                    error=str(e),
                    attempt=attempt,
                    retry_in_seconds=delay,
                )
                connected_before = True
                self._sleep(delay)

        logger.info("listener_stopped", messages_processed=self.messages_processed)


class PeriodicSweeper:
    """Daemon thread running ``engine.run_sweeps()`` every ``sweep_interval_seconds``."""

    def __init__(self, engine: RiskWatchEngine, interval: Optional[float] = None) -> None:
        rbac.require_permission(Role.SYSTEM, rbac.RUN_SWEEPS)
        self._engine = engine
        self._interval = interval or engine.settings.listener.sweep_interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.passes = 0

    def run_once(self) -> None:
        try:
            report = self._engine.run_sweeps()
        except RiskWatchError as e:
            logger.error("sweep_failed", error=str(e), error_type=type(e).__name__)
            return
        self.passes += 1
        logger.info(
            "sweep_completed",
            expired=len(report.expired),
            reconciled=len(report.reconciled),
        )

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            self.run_once()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="riskwatch-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
