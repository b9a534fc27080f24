"""Post-commit fan-out of lending events to audit, notification and log sinks.

Sinks are best effort: the dispatcher retries a failing sink a bounded
number of times, logs the final failure and moves on. Nothing here may raise
back into the caller that committed the transition.
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from sqlalchemy.orm import Session

from lending_desk.models.lending_models import AuditLog, NotificationQueue


EVENTS_LOGGER = logging.getLogger("lending_desk.events")

LOAN_REQUESTED = "LoanRequested"
LOAN_BORROWED = "LoanBorrowed"
LOAN_APPROVED = "LoanApproved"
LOAN_REJECTED = "LoanRejected"
LOAN_CANCELLED = "LoanCancelled"
LOAN_CONSUMED = "LoanConsumed"
LOAN_RETURNED = "LoanReturned"
RETURN_SUBMITTED = "ReturnSubmitted"
RETURN_APPROVED = "ReturnApproved"
RETURN_REJECTED = "ReturnRejected"
LOAN_DELETED = "LoanDeleted"
LOW_STOCK = "LowStock"

NOTIFY_ON = {
    LOAN_REQUESTED,
    LOAN_APPROVED,
    LOAN_REJECTED,
    RETURN_SUBMITTED,
    RETURN_REJECTED,
    LOW_STOCK,
}


@dataclass(frozen=True)
class LoanEvent:
    action: str
    tenant_id: int
    loan_id: int | None
    actor: str | None = None
    item_kind: str | None = None
    item_id: int | None = None
    details: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=datetime.now)

    def summary(self) -> str:
        parts = [f"{self.action} tenant={self.tenant_id}"]
        if self.loan_id is not None:
            parts.append(f"loan={self.loan_id}")
        if self.item_kind:
            parts.append(f"item={self.item_kind}:{self.item_id}")
        if self.actor:
            parts.append(f"by={self.actor}")
        return " ".join(parts)


class EventSink:
    name = "sink"

    def handle(self, event: LoanEvent) -> None:
        raise NotImplementedError


class LoggingSink(EventSink):
    name = "log"

    def handle(self, event: LoanEvent) -> None:
        EVENTS_LOGGER.info(event.summary())


class AuditLogSink(EventSink):
    name = "audit"

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def handle(self, event: LoanEvent) -> None:
        db = self._session_factory()
        try:
            db.add(
                AuditLog(
                    TenantID=event.tenant_id,
                    EntityType="Loan" if event.loan_id is not None else "Item",
                    EntityID=event.loan_id if event.loan_id is not None else int(event.item_id or 0),
                    Action=event.action,
                    Details=json.dumps(event.details, ensure_ascii=True, default=str)[:2000] if event.details else None,
                    Actor=event.actor,
                    CreatedAt=event.occurred_at,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class NotificationSink(EventSink):
    name = "notifications"

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def handle(self, event: LoanEvent) -> None:
        if event.action not in NOTIFY_ON:
            return
        db = self._session_factory()
        try:
            db.add(
                NotificationQueue(
                    TenantID=event.tenant_id,
                    LoanID=event.loan_id,
                    NotificationType=event.action,
                    Payload=_notification_payload(event),
                    CreatedAt=event.occurred_at,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def _notification_payload(event: LoanEvent) -> str:
    details = event.details or {}
    if event.action == LOW_STOCK:
        return f"{details.get('name')} is running low: {details.get('remaining')} left"
    borrower = details.get("borrowerName") or "borrower"
    item_name = details.get("itemName") or f"{event.item_kind}:{event.item_id}"
    if event.action == LOAN_REQUESTED:
        return f"{borrower} requested {item_name}"
    if event.action == LOAN_APPROVED:
        return f"Request for {item_name} approved"
    if event.action == LOAN_REJECTED:
        reason = details.get("reason")
        return f"Request for {item_name} rejected" + (f": {reason}" if reason else "")
    if event.action == RETURN_SUBMITTED:
        return f"{borrower} returned {item_name}; awaiting approval"
    if event.action == RETURN_REJECTED:
        return f"Return of {item_name} was not accepted"
    return event.summary()


class EventDispatcher:
    def __init__(self, sinks: Iterable[EventSink], *, mode: str = "background", workers: int = 2, attempts: int = 2):
        self._sinks = list(sinks)
        self._mode = mode
        self._attempts = max(1, attempts)
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()
        self._workers = max(1, workers)

    @property
    def sinks(self) -> list[EventSink]:
        return list(self._sinks)

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="lending-events")
            return self._executor

    def dispatch(self, events: Iterable[LoanEvent]) -> None:
        for event in events:
            for sink in self._sinks:
                if self._mode == "sync":
                    self._deliver(sink, event)
                    continue
                try:
                    self._get_executor().submit(self._deliver, sink, event)
                except RuntimeError:
                    EVENTS_LOGGER.exception("Could not queue %s for sink %s", event.action, sink.name)

    def _deliver(self, sink: EventSink, event: LoanEvent) -> None:
        for attempt in range(1, self._attempts + 1):
            try:
                sink.handle(event)
                return
            except Exception:
                if attempt >= self._attempts:
                    EVENTS_LOGGER.exception(
                        "Sink %s dropped %s after %s attempts",
                        sink.name,
                        event.summary(),
                        attempt,
                    )
                else:
                    EVENTS_LOGGER.warning("Sink %s failed on %s, retrying", sink.name, event.action)

    def shutdown(self, wait: bool = True) -> None:
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None


def build_default_dispatcher(session_factory: Callable[[], Session], *, mode: str = "background", workers: int = 2) -> EventDispatcher:
    return EventDispatcher(
        [LoggingSink(), AuditLogSink(session_factory), NotificationSink(session_factory)],
        mode=mode,
        workers=workers,
    )
