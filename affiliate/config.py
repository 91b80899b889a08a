# affiliate/config.py
from decimal import Decimal, ROUND_HALF_UP
from flask import current_app, has_app_context


class AffiliateConfig:
    """
    Affiliate programme settings. App config overrides the class defaults,
    so tests and deployments can tune holding periods and thresholds.
    """

    DEFAULT_COMMISSION_RATE = Decimal("10.00")   # percent
    MIN_PAYOUT_THRESHOLD = Decimal("10.00")      # GBP
    COMMISSION_HOLDING_DAYS = 14
    AFFILIATE_REAPPLY_DAYS = 30
    CODE_REGENERATION_COOLDOWN_HOURS = 24
    AFFILIATE_COMMISSION_BASIS = "post_discount"

    CODE_PREFIX = "SONG"
    CODE_HEX_LENGTH = 8
    CODE_MAX_ATTEMPTS = 10

    CENT = Decimal("0.01")

    @staticmethod
    def get(key):
        default = getattr(AffiliateConfig, key)
        if has_app_context():
            return current_app.config.get(key, default)
        return default

    @staticmethod
    def default_rate() -> Decimal:
        return Decimal(str(AffiliateConfig.get("DEFAULT_COMMISSION_RATE")))

    @staticmethod
    def min_payout_threshold() -> Decimal:
        return Decimal(str(AffiliateConfig.get("MIN_PAYOUT_THRESHOLD")))

    @staticmethod
    def holding_days() -> int:
        return int(AffiliateConfig.get("COMMISSION_HOLDING_DAYS"))

    @staticmethod
    def reapply_days() -> int:
        return int(AffiliateConfig.get("AFFILIATE_REAPPLY_DAYS"))

    @staticmethod
    def code_cooldown_hours() -> int:
        return int(AffiliateConfig.get("CODE_REGENERATION_COOLDOWN_HOURS"))

    @staticmethod
    def uses_pre_discount_basis() -> bool:
        return AffiliateConfig.get("AFFILIATE_COMMISSION_BASIS") == "pre_discount"

    @staticmethod
    def quantize(amount) -> Decimal:
        return Decimal(str(amount or 0)).quantize(AffiliateConfig.CENT, rounding=ROUND_HALF_UP)

    @staticmethod
    def calculate_commission(order_total, rate=None) -> Decimal:
        """Commission for an order total at a percentage rate, to the penny."""
        if rate is None:
            rate = AffiliateConfig.default_rate()
        total = Decimal(str(order_total or 0))
        if total < 0:
            total = Decimal("0")
        return AffiliateConfig.quantize(total * Decimal(str(rate)) / Decimal("100"))

    @staticmethod
    def commission_basis(total_price, discount_amount) -> Decimal:
        """Order value commissions are computed on."""
        total = Decimal(str(total_price or 0))
        if AffiliateConfig.uses_pre_discount_basis():
            return AffiliateConfig.quantize(total + Decimal(str(discount_amount or 0)))
        return AffiliateConfig.quantize(max(Decimal("0"), total))
