"""Outbound notifications. Delivery itself (email) is someone else's job."""

from abc import ABC, abstractmethod
from typing import Sequence

import structlog

from .domain import Registration, Ticket

logger = structlog.get_logger()


class Notifier(ABC):
    @abstractmethod
    async def registration_received(self, reg: Registration) -> None: ...

    @abstractmethod
    async def tickets_issued(self, reg: Registration,
                             tickets: Sequence[Ticket]) -> None: ...


class LogNotifier(Notifier):
    async def registration_received(self, reg: Registration) -> None:
        logger.info("notify_registration_received",
                    registration_id=reg.id, email=reg.email,
                    requires_payment=reg.requires_payment)

    async def tickets_issued(self, reg: Registration,
                             tickets: Sequence[Ticket]) -> None:
        logger.info("notify_tickets_issued",
                    registration_id=reg.id, email=reg.email,
                    tickets=[t.ticket_number for t in tickets])
