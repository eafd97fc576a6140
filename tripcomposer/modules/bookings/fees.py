"""Booking fee, commission and refund arithmetic in integer cents."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from tripcomposer.config import Settings, get_settings
from tripcomposer.errors import ValidationFailedError


@dataclass(frozen=True)
class FeeBreakdown:
    base_price_cents: int
    booking_fee_cents: int
    total_amount_cents: int
    platform_commission_cents: int
    agent_payout_cents: int


class FeeCalculator:
    """Traveler pays base + booking fee; the platform keeps a commission of the base."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        s = settings or get_settings()
        self._fee_rate = s.booking_fee_rate
        self._fee_fixed_cents = s.booking_fee_fixed_cents
        self._commission_rate = s.booking_platform_commission_rate
        self._min_cents = s.booking_min_amount_cents
        self._max_cents = s.booking_max_amount_cents

    def validate_price(self, amount_cents: int) -> None:
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
            raise ValidationFailedError("Amount must be an integer number of cents")
        if amount_cents < self._min_cents:
            raise ValidationFailedError(f"Amount {amount_cents} cents is below minimum {self._min_cents} cents")
        if amount_cents > self._max_cents:
            raise ValidationFailedError(f"Amount {amount_cents} cents exceeds maximum {self._max_cents} cents")

    def calculate(self, base_price_cents: int) -> FeeBreakdown:
        self.validate_price(base_price_cents)
        booking_fee = math.ceil(base_price_cents * self._fee_rate) + self._fee_fixed_cents
        commission = math.floor(base_price_cents * self._commission_rate)
        return FeeBreakdown(
            base_price_cents=base_price_cents,
            booking_fee_cents=booking_fee,
            total_amount_cents=base_price_cents + booking_fee,
            platform_commission_cents=commission,
            agent_payout_cents=base_price_cents - commission,
        )

    @staticmethod
    def refund_amount(
        total_amount_cents: int,
        booking_fee_cents: int,
        cancelled_before_agent_confirm: bool,
        agent_at_fault: bool,
    ) -> int:
        """Agent fault refunds everything; early traveler cancellation keeps the fee;
        later cancellation refunds half the base price."""
        if agent_at_fault:
            return total_amount_cents
        if cancelled_before_agent_confirm:
            return total_amount_cents - booking_fee_cents
        return math.floor((total_amount_cents - booking_fee_cents) * 0.5)
