"""Built-in tool implementations."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

import structlog
from pydantic import BaseModel, Field

from advisor_pipeline.tools.registry import ToolDescriptor, ToolRegistry
from advisor_pipeline.tools.tickets import HelpDeskTicket, TicketRepository

logger = structlog.get_logger(__name__)


class TicketRequest(BaseModel):
    issue: str = Field(min_length=1, description="Details to create a support ticket")


class NoArguments(BaseModel):
    pass


class TimeZoneInput(BaseModel):
    time_zone: str = Field(min_length=1, description="IANA time zone, e.g. Asia/Kolkata")


def register_helpdesk_tools(registry: ToolRegistry, repository: TicketRepository) -> None:
    """Register help-desk tools.

    Tools:
    - `createTicket`: opens a ticket for the calling user; its confirmation is
      returned to the client directly.
    - `getTicketStatus`: lists the calling user's tickets.

    Both read the ``username`` key of the call context.
    """

    async def _create_ticket(data: TicketRequest, context: Mapping[str, Any]) -> str:
        username = str(context["username"])
        logger.info("helpdesk.create_ticket", username=username)
        ticket = repository.create(username, data.issue)
        logger.info("helpdesk.ticket_created", ticket_id=ticket.id, username=username)
        return f"Ticket #{ticket.id} created successfully for user: {username}"

    async def _ticket_status(_: NoArguments, context: Mapping[str, Any]) -> list[HelpDeskTicket]:
        username = str(context["username"])
        tickets = repository.by_username(username)
        logger.info("helpdesk.ticket_status", username=username, tickets=len(tickets))
        return tickets

    registry.register(
        ToolDescriptor(
            name="createTicket",
            description="Create a new support ticket",
            args_schema=TicketRequest,
            handler=_create_ticket,
            returns_direct=True,
            required_context=("username",),
        )
    )
    registry.register(
        ToolDescriptor(
            name="getTicketStatus",
            description="Fetch the status of the open tickets of the current user",
            args_schema=NoArguments,
            handler=_ticket_status,
            required_context=("username",),
        )
    )


def register_time_tools(registry: ToolRegistry) -> None:
    async def _local_time(_: NoArguments, context: Mapping[str, Any]) -> str:
        return datetime.now().astimezone().isoformat()

    async def _time_in_zone(data: TimeZoneInput, context: Mapping[str, Any]) -> str:
        logger.info("time.lookup", time_zone=data.time_zone)
        return datetime.now(ZoneInfo(data.time_zone)).isoformat()

    registry.register(
        ToolDescriptor(
            name="getCurrentLocalTime",
            description="Returns the current time in the server's time zone",
            args_schema=NoArguments,
            handler=_local_time,
        )
    )
    registry.register(
        ToolDescriptor(
            name="getCurrentTime",
            description="Returns the current time in the specified time zone",
            args_schema=TimeZoneInput,
            handler=_time_in_zone,
        )
    )


def register_builtin_tools(registry: ToolRegistry, repository: TicketRepository) -> None:
    register_helpdesk_tools(registry, repository)
    register_time_tools(registry)
