"""Row factories shared by the database-backed tests."""

from __future__ import annotations

import datetime as dt
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from tripcomposer.modules.bookings.models import Booking
from tripcomposer.modules.bookings.state_machine import BookingState, PaymentState
from tripcomposer.modules.identity.models import AccountStatus, AgentProfile, AgentVerificationStatus, User
from tripcomposer.modules.matching.models import AgentPerformanceRecord

_counter = {"n": 0}


def _next(prefix: str) -> str:
    _counter["n"] += 1
    return f"{prefix}-{_counter['n']}"


async def make_user(
    session: AsyncSession,
    role: str = "USER",
    status: str = AccountStatus.ACTIVE.value,
    first_name: str = "Asha",
    user_id: Optional[str] = None,
) -> User:
    user = User(
        id=user_id or _next(role.lower()),
        email=f"{_next('mail')}@example.com",
        role=role,
        status=status,
        first_name=first_name,
        last_name="Traveler",
    )
    session.add(user)
    await session.flush()
    return user


async def make_agent(
    session: AsyncSession,
    tier: str = "STAR",
    rating: float = 4.8,
    completed_bookings: int = 25,
    specializations: Optional[list[str]] = None,
    regions: Optional[list[str]] = None,
    verification: str = AgentVerificationStatus.VERIFIED.value,
    agent_id: Optional[str] = None,
    **record_fields: Any,
) -> User:
    """Create an active agent with a profile and a matching record."""
    user = await make_user(session, role="AGENT", first_name="Ravi", user_id=agent_id)
    session.add(AgentProfile(user_id=user.id, verification_status=verification, specialties=[]))
    session.add(AgentPerformanceRecord(
        agent_id=user.id,
        tier=tier,
        rating=rating,
        completed_bookings=completed_bookings,
        average_response_time_hours=2.0,
        availability="AVAILABLE",
        specializations=specializations or [],
        regions=regions or [],
        is_active=True,
        **record_fields,
    ))
    await session.flush()
    return user


async def make_booking(
    session: AsyncSession,
    user_id: str,
    agent_id: str,
    state: BookingState = BookingState.COMPLETED,
    completed_at: Optional[dt.datetime] = None,
    total_cents: int = 100_000,
    request_id: Optional[str] = None,
) -> Booking:
    now = dt.datetime.now(dt.UTC)
    booking = Booking(
        user_id=user_id,
        agent_id=agent_id,
        request_id=request_id,
        state=state.value,
        payment_state=PaymentState.IN_ESCROW.value,
        trip_start_date=now - dt.timedelta(days=10),
        trip_end_date=now - dt.timedelta(days=3),
        base_price_cents=total_cents,
        total_amount_cents=total_cents,
        booking_fee_cents=0,
        trip_completed_at=completed_at if completed_at is not None else (
            now - dt.timedelta(days=2) if state == BookingState.COMPLETED else None
        ),
        version=1,
    )
    session.add(booking)
    await session.flush()
    return booking
