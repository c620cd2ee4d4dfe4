"""Fee calculation utilities for PayPal deposits"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict
from config import Config

logger = logging.getLogger(__name__)


class FeeCalculator:
    """Handles all fee-related calculations with mathematical precision"""

    USD_PRECISION = Decimal("0.01")  # 2 decimal places for USD

    @classmethod
    def get_fee_rate(cls) -> Decimal:
        """Fractional processor fee rate (3.9% -> 0.039)"""
        return Decimal(str(Config.DEPOSIT_FEE_PERCENTAGE)) / Decimal("100")

    @classmethod
    def get_fixed_fee(cls) -> Decimal:
        return Decimal(str(Config.DEPOSIT_FIXED_FEE))

    @classmethod
    def _to_amount(cls, amount: Any) -> Decimal:
        """Coerce to Decimal; anything non-numeric or non-positive becomes zero"""
        if isinstance(amount, bool) or amount is None:
            return Decimal("0")
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError, TypeError):
            return Decimal("0")
        if not value.is_finite() or value <= 0:
            return Decimal("0")
        return value

    @classmethod
    def calculate_processing_fee(cls, amount: Any) -> Decimal:
        """
        Processor fee for a gross deposit amount.

        fee = amount * rate + fixed, rounded to cents. Degenerate input yields 0
        instead of raising; callers validate positivity before creating deposits.
        """
        value = cls._to_amount(amount)
        if value == 0:
            return Decimal("0.00")
        fee = value * cls.get_fee_rate() + cls.get_fixed_fee()
        return fee.quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def calculate_net_amount(cls, amount: Any) -> Decimal:
        """Amount credited to the user after the processor fee"""
        value = cls._to_amount(amount)
        if value == 0:
            return Decimal("0.00")
        net = value - cls.calculate_processing_fee(value)
        return net.quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def calculate_deposit_breakdown(cls, amount: Any) -> Dict[str, Decimal]:
        """Gross, fee and net for display and deposit creation"""
        gross = cls._to_amount(amount).quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)
        return {
            "gross_amount": gross,
            "fee_amount": cls.calculate_processing_fee(amount),
            "net_amount": cls.calculate_net_amount(amount),
        }
