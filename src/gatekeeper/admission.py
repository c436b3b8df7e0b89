"""
Admission control.

Combines rate limits and quotas into one decision per outbound request to a
metered provider, and tracks the resulting reservation until it is settled
with the real cost or cancelled.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator

from gatekeeper.clock import Clock, default_clock
from gatekeeper.config import settings
from gatekeeper.exceptions import StateStoreUnavailable, TicketStateError
from gatekeeper.quota.config import load_quota_config
from gatekeeper.quota.manager import QuotaManager
from gatekeeper.quota.models import GLOBAL_SCOPE_ID, QuotaType
from gatekeeper.ratelimit.service import RateLimiter
from gatekeeper.store.base import StateStore

logger = logging.getLogger(__name__)


class FailureMode(str, Enum):
    """What to do when the state store cannot be reached."""

    CLOSED = "closed"  # Deny
    OPEN = "open"  # Admit without accounting


class TicketState(str, Enum):
    OPEN = "open"
    SETTLED = "settled"
    CANCELLED = "cancelled"


@dataclass
class AdmissionTicket:
    """An admitted request holding a quota reservation."""

    scope: str
    scope_id: str
    quota_type: QuotaType
    reserved_cost: float
    provider: str | None = None
    feature: str | None = None
    created_at: float = 0.0
    degraded: bool = False
    """Admitted while the store was unavailable; nothing was reserved."""

    ticket_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: TicketState = TicketState.OPEN
    actual_cost: float | None = None
    resolved_keys: set[str] = field(default_factory=set)
    """Quota keys already settled or released, skipped when the ticket is retried."""

    @property
    def is_open(self) -> bool:
        return self.state == TicketState.OPEN

    def record(self, actual_cost: float) -> None:
        """Record the real cost, used when the admission context settles."""
        self.actual_cost = actual_cost

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticket_id": self.ticket_id,
            "scope": self.scope,
            "scope_id": self.scope_id,
            "quota_type": self.quota_type.value,
            "reserved_cost": self.reserved_cost,
            "actual_cost": self.actual_cost,
            "provider": self.provider,
            "feature": self.feature,
            "created_at": self.created_at,
            "degraded": self.degraded,
            "state": self.state.value,
            "resolved_keys": sorted(self.resolved_keys),
        }


class AdmissionController:
    """
    Decides whether a request may call a metered provider.

    Rate limits are checked first, global before provider before caller
    before feature, so systemic overload fails fast. The quota chain is
    then checked with a reservation of the estimated cost.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        quota_manager: QuotaManager,
        failure_mode: FailureMode | str | None = None,
        clock: Clock | None = None,
    ) -> None:
        """
        Initialize the admission controller.

        Args:
            rate_limiter: Rate limiter for the global/provider/caller/feature chain
            quota_manager: Quota manager for the scope chain
            failure_mode: Store failure policy, defaults to settings (closed)
            clock: Time source for ticket timestamps
        """
        self._rate_limiter = rate_limiter
        self._quota_manager = quota_manager
        self._failure_mode = FailureMode(failure_mode or settings.store_failure_mode)
        self._clock = clock or default_clock

        if self._failure_mode == FailureMode.OPEN:
            logger.warning("Admission control configured to fail open when the state store is unavailable")

    @classmethod
    def from_settings(cls, store: StateStore, clock: Clock | None = None) -> AdmissionController:
        """Build a controller with rules and quotas loaded from the configured files."""
        provider, hierarchy = load_quota_config()
        return cls(
            rate_limiter=RateLimiter(store, clock=clock),
            quota_manager=QuotaManager(store, provider, hierarchy=hierarchy, clock=clock),
            clock=clock,
        )

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def quota_manager(self) -> QuotaManager:
        return self._quota_manager

    @property
    def failure_mode(self) -> FailureMode:
        return self._failure_mode

    def _handle_store_failure(self, operation: str, error: StateStoreUnavailable) -> None:
        """Re-raise in fail-closed mode; log loudly in fail-open mode."""
        if self._failure_mode == FailureMode.CLOSED:
            logger.error(f"State store unavailable during {operation}, denying: {error}")
            raise error
        logger.critical(f"State store unavailable during {operation}, FAILING OPEN: {error}")

    async def admit(
        self,
        scope: str,
        identifier: str,
        provider: str | None,
        quota_type: QuotaType | str,
        estimated_cost: float,
        rate_cost: float = 1.0,
        feature: str | None = None,
    ) -> AdmissionTicket:
        """
        Check rate limits and quotas, reserving `estimated_cost`.

        Rate limit units taken before a later denial are not refunded.

        Args:
            scope: Caller scope ("user", "group", "site" or "global")
            identifier: Caller identifier within the scope
            provider: Provider about to be called
            quota_type: Metric the estimated cost is expressed in
            estimated_cost: Amount to reserve on every quota in the chain
            rate_cost: Units taken from each rate limiter
            feature: Optional feature name with its own rate limit

        Returns:
            An open AdmissionTicket

        Raises:
            RateLimitExceeded: If any limiter in the chain denies
            QuotaExceeded: If any quota in the chain lacks headroom
            ConfigurationError: If limits for a scope are missing
            StateStoreUnavailable: If the store fails and the mode is closed
        """
        quota_type = QuotaType(quota_type)
        ticket = AdmissionTicket(
            scope=scope,
            scope_id=identifier,
            quota_type=quota_type,
            reserved_cost=estimated_cost,
            provider=provider,
            feature=feature,
            created_at=self._clock.now(),
        )

        try:
            await self._rate_limiter.check_limit("global", GLOBAL_SCOPE_ID, cost=rate_cost)
            if provider:
                await self._rate_limiter.check_limit("provider", provider, cost=rate_cost)
            await self._rate_limiter.check_limit(scope, identifier, cost=rate_cost)
            if feature:
                await self._rate_limiter.check_limit("feature", feature, cost=rate_cost)

            await self._quota_manager.check_quota(
                scope, identifier, quota_type, cost=estimated_cost, reserve=True
            )
        except StateStoreUnavailable as e:
            self._handle_store_failure("admit", e)
            ticket.degraded = True
            ticket.reserved_cost = 0.0

        logger.debug(f"Admitted {scope}:{identifier} -> {provider} (ticket {ticket.ticket_id})")
        return ticket

    def _require_open(self, ticket: AdmissionTicket, action: str) -> None:
        if not ticket.is_open:
            raise TicketStateError(f"Cannot {action} ticket {ticket.ticket_id}: already {ticket.state.value}")

    async def settle(self, ticket: AdmissionTicket, actual_cost: float | None = None) -> None:
        """
        Book the real cost of a completed request and release its reservation.

        Args:
            ticket: Open ticket from `admit`
            actual_cost: Real cost, defaults to the recorded or estimated cost

        Raises:
            TicketStateError: If the ticket was already settled or cancelled, or
                a retry after a partial settle passes a different cost
        """
        self._require_open(ticket, "settle")
        if ticket.resolved_keys and actual_cost is not None and actual_cost != ticket.actual_cost:
            raise TicketStateError(
                f"Ticket {ticket.ticket_id} is partially settled at {ticket.actual_cost:g}, cannot settle at {actual_cost:g}"
            )
        cost = actual_cost if actual_cost is not None else ticket.actual_cost
        if cost is None:
            cost = ticket.reserved_cost
        ticket.actual_cost = cost

        if not ticket.degraded:
            try:
                await self._quota_manager.consume_quota(
                    ticket.scope,
                    ticket.scope_id,
                    ticket.quota_type,
                    actual_cost=cost,
                    reserved_cost=ticket.reserved_cost,
                    completed=ticket.resolved_keys,
                )
            except StateStoreUnavailable as e:
                self._handle_store_failure("settle", e)

        ticket.state = TicketState.SETTLED

    async def cancel(self, ticket: AdmissionTicket) -> None:
        """
        Release the reservation of a request that failed or was aborted.

        After a partial settle only the keys that settle did not reach are
        released.

        Raises:
            TicketStateError: If the ticket was already settled or cancelled
        """
        self._require_open(ticket, "cancel")

        if not ticket.degraded and ticket.reserved_cost > 0:
            try:
                await self._quota_manager.release_quota(
                    ticket.scope,
                    ticket.scope_id,
                    ticket.quota_type,
                    reserved_cost=ticket.reserved_cost,
                    completed=ticket.resolved_keys,
                )
            except StateStoreUnavailable as e:
                self._handle_store_failure("cancel", e)

        ticket.state = TicketState.CANCELLED

    @asynccontextmanager
    async def admission(
        self,
        scope: str,
        identifier: str,
        provider: str | None,
        quota_type: QuotaType | str,
        estimated_cost: float,
        rate_cost: float = 1.0,
        feature: str | None = None,
    ) -> AsyncIterator[AdmissionTicket]:
        """
        Admit a request for the duration of a block.

        The ticket is cancelled if the block raises (including task
        cancellation) and settled otherwise, with the cost passed to
        `ticket.record()` or the estimate.

        Example:
            async with controller.admission("user", "alice", "openai", "tokens", 800) as ticket:
                response = await client.complete(prompt)
                ticket.record(response.total_tokens)
        """
        ticket = await self.admit(
            scope,
            identifier,
            provider,
            quota_type,
            estimated_cost,
            rate_cost=rate_cost,
            feature=feature,
        )
        try:
            yield ticket
        except BaseException:
            if ticket.is_open:
                await self.cancel(ticket)
            raise

        if ticket.is_open:
            await self.settle(ticket)
