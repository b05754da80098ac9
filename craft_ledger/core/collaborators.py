"""
Outbound collaborators of the metering engine.

Email delivery and provider-side pausing are injected so the orchestrator
never talks to a mail server or a sandbox provider directly. The logging
implementations are the defaults for local runs and the CLI.
"""

from datetime import datetime
from decimal import Decimal
from typing import Protocol

import structlog

from craft_ledger.storage.models import MonitoredResource

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    """Sends account emails."""

    def send_low_balance_warning(self, email: str, balance: Decimal) -> None: ...

    def send_service_paused(self, email: str, service_name: str, balance: Decimal) -> None: ...

    def send_token_expiry_notice(self, email: str, amount: Decimal) -> None: ...

    def send_credits_expiring_soon(
        self, email: str, amount: Decimal, expires_at: datetime
    ) -> None: ...


class ResourcePauser(Protocol):
    """Pauses a resource at its provider (sandbox, database, deployment)."""

    def pause(self, resource: MonitoredResource) -> None: ...


class LoggingNotifier:
    """Notifier that only records what would have been sent."""

    def send_low_balance_warning(self, email: str, balance: Decimal) -> None:
        logger.info("email_low_balance_warning", email=email, balance=str(balance))

    def send_service_paused(self, email: str, service_name: str, balance: Decimal) -> None:
        logger.info(
            "email_service_paused", email=email, service=service_name, balance=str(balance)
        )

    def send_token_expiry_notice(self, email: str, amount: Decimal) -> None:
        logger.info("email_token_expiry", email=email, amount=str(amount))

    def send_credits_expiring_soon(
        self, email: str, amount: Decimal, expires_at: datetime
    ) -> None:
        logger.info(
            "email_credits_expiring_soon",
            email=email,
            amount=str(amount),
            expires_at=expires_at.isoformat(),
        )


class LoggingPauser:
    """Pauser that logs instead of calling a provider API."""

    def pause(self, resource: MonitoredResource) -> None:
        logger.info(
            "resource_pause_requested",
            resource_id=resource.id,
            kind=resource.kind.value,
            external_ref=resource.external_ref,
        )
