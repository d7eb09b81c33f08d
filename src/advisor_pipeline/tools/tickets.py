"""Help-desk ticket model and in-memory repository."""

from __future__ import annotations

import itertools
import threading
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel


class HelpDeskTicket(BaseModel):
    id: int
    username: str
    issue: str
    status: str = "OPEN"
    created_at: datetime
    eta: datetime


class TicketRepository:
    """Thread-safe ticket storage; tool handlers may run in worker threads."""

    def __init__(self, resolution_days: int = 7) -> None:
        self._tickets: dict[int, HelpDeskTicket] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._resolution = timedelta(days=resolution_days)

    def create(self, username: str, issue: str) -> HelpDeskTicket:
        now = datetime.now(timezone.utc)
        with self._lock:
            ticket = HelpDeskTicket(
                id=next(self._ids),
                username=username,
                issue=issue,
                created_at=now,
                eta=now + self._resolution,
            )
            self._tickets[ticket.id] = ticket
        return ticket

    def by_username(self, username: str) -> list[HelpDeskTicket]:
        with self._lock:
            return [ticket for ticket in self._tickets.values() if ticket.username == username]
