"""Read-only rate, limit and provider tables.

Values here change with a deploy, never through the API. A ``RatePolicy``
instance wraps the tables so tests and alternative deployments can pass
their own limits without touching module state.
"""
from dataclasses import dataclass, field, replace
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple, Union

from monetization.models.earning import ActivityType
from monetization.models.withdrawal import WithdrawalChannel


Amount = Union[Decimal, str, int, float]


def to_cents(amount: Amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


# USD per 1000 views
CPM_BY_REGION: Dict[str, Decimal] = {
    "US": Decimal("6.50"),
    "CA": Decimal("6.00"),
    "GB": Decimal("5.50"),
    "AU": Decimal("5.25"),
    "DE": Decimal("4.75"),
    "FR": Decimal("4.75"),
    "JP": Decimal("6.00"),
    "IN": Decimal("2.50"),
    "BR": Decimal("3.00"),
    "MX": Decimal("3.25"),
    "ZA": Decimal("3.25"),
    "NG": Decimal("3.00"),
    "KE": Decimal("3.00"),
    "GH": Decimal("3.00"),
    "EG": Decimal("2.50"),
    "DEFAULT": Decimal("3.50"),
}

# USD per activity (live_watch is per minute)
EARNING_RATES: Dict[ActivityType, Decimal] = {
    ActivityType.WATCH: Decimal("0.02"),
    ActivityType.LIKE: Decimal("0.01"),
    ActivityType.COMMENT: Decimal("0.02"),
    ActivityType.SHARE: Decimal("0.05"),
    ActivityType.INVITE: Decimal("1.00"),
    ActivityType.LIVE_WATCH: Decimal("0.01"),
    ActivityType.POLL_VOTE: Decimal("0.02"),
    ActivityType.CHALLENGE: Decimal("1.00"),
}

TASK_RATES: Dict[str, Decimal] = {
    "simple_post": Decimal("0.10"),
    "video_post": Decimal("0.25"),
    "group_creation": Decimal("1.00"),
    "group_invite_10": Decimal("2.50"),
    "moderation": Decimal("0.05"),
    "survey_response": Decimal("0.25"),
    "app_test": Decimal("1.50"),
    "review_write": Decimal("0.50"),
}

# share of a gift or tip credited to the creator
GIFT_CREATOR_SHARE = Decimal("0.80")

# viewer micro-earnings that count toward the daily cap
CAPPED_ACTIVITIES = frozenset({
    ActivityType.WATCH,
    ActivityType.LIKE,
    ActivityType.COMMENT,
    ActivityType.SHARE,
    ActivityType.LIVE_WATCH,
    ActivityType.POLL_VOTE,
    ActivityType.TASK,
})

# accrued immediately but not withdrawable until verified
HELD_ACTIVITIES = frozenset({ActivityType.INVITE, ActivityType.CHALLENGE})

MIN_WATCH_SECONDS = 30
MIN_COMMENT_LENGTH = 3
MIN_LIVE_WATCH_MINUTES = 1


@dataclass(frozen=True)
class DailyLimits:
    max_daily_earnings: int = 1000  # cents
    per_activity: Dict[ActivityType, int] = field(default_factory=lambda: {
        ActivityType.WATCH: 500,
        ActivityType.LIKE: 1000,
        ActivityType.COMMENT: 200,
        ActivityType.SHARE: 100,
        ActivityType.INVITE: 20,
    })


@dataclass(frozen=True)
class WithdrawalRules:
    min_amount: int  # cents
    max_amount: int  # cents
    min_account_age_days: int = 0
    min_activities: int = 0
    daily_limit: Optional[int] = None
    monthly_limit: Optional[int] = None
    max_risk_score: Optional[int] = None


WITHDRAWAL_RULES = WithdrawalRules(
    min_amount=to_cents("1.00"),
    max_amount=to_cents("1000.00"),
    min_account_age_days=7,
    min_activities=10,
    daily_limit=3,
    monthly_limit=50,
    max_risk_score=70,
)

INSTANT_WITHDRAWAL_RULES = WithdrawalRules(
    min_amount=to_cents("0.01"),
    max_amount=to_cents("10000.00"),
)

DEFAULT_FEE_RATE = Decimal("0.02")

WITHDRAWAL_FEES: Dict[WithdrawalChannel, Dict[str, Decimal]] = {
    WithdrawalChannel.STANDARD: {
        "MTN": Decimal("0.05"),
        "Orange": Decimal("0.05"),
        "Airtel": Decimal("0.05"),
        "Wave": Decimal("0.02"),
    },
    WithdrawalChannel.INSTANT: {
        "MTN": Decimal("0.02"),
        "Orange": Decimal("0.02"),
        "Airtel": Decimal("0.02"),
        "Wave": Decimal("0.01"),
        "Vodafone": Decimal("0.02"),
        "Safaricom": Decimal("0.02"),
        "Moov": Decimal("0.02"),
        "Glo": Decimal("0.02"),
    },
}

PROVIDERS_BY_COUNTRY: Dict[str, List[str]] = {
    "SN": ["Wave", "Orange", "Airtel"],
    "CI": ["Orange", "MTN", "Airtel"],
    "NG": ["MTN", "Airtel", "Glo"],
    "KE": ["Safaricom", "Airtel", "Equity"],
    "TZ": ["Vodacom", "Airtel", "CRDB"],
    "UG": ["MTN", "Airtel", "Equity"],
    "GH": ["MTN", "Vodafone", "AirtelTigo"],
    "CM": ["MTN", "Orange", "Camtel"],
    "BJ": ["MTN", "Moov", "Airtel"],
    "ML": ["Orange", "Airtel", "Malitel"],
    "BF": ["Orange", "Airtel", "Telecel"],
    "NE": ["Airtel", "Maroc", "Moov"],
    "TG": ["Airtel", "Moov", "Togocel"],
    "CD": ["Airtel", "Orange", "Vodacom"],
    "RW": ["MTN", "Airtel", "Equity"],
    "ET": ["Ethio", "Vodafone", "Awash"],
}

INSTANT_PROVIDERS_BY_COUNTRY: Dict[str, List[str]] = {
    # West Africa
    "SN": ["Wave", "Orange", "Airtel", "Tigo"],
    "CI": ["Orange", "MTN", "Airtel", "Moov"],
    "NG": ["MTN", "Airtel", "Glo", "9mobile"],
    "GH": ["MTN", "Vodafone", "AirtelTigo"],
    "CM": ["MTN", "Orange", "Camtel"],
    "BJ": ["MTN", "Moov", "Airtel"],
    "ML": ["Orange", "Airtel", "Malitel"],
    "BF": ["Orange", "Airtel", "Telecel"],
    "NE": ["Airtel", "Maroc", "Moov"],
    "TG": ["Airtel", "Moov", "Togocel"],
    # East Africa
    "KE": ["Safaricom", "Airtel", "Equity"],
    "TZ": ["Vodacom", "Airtel", "CRDB"],
    "UG": ["MTN", "Airtel", "Equity"],
    "RW": ["MTN", "Airtel", "Equity"],
    "ET": ["Ethio", "Vodafone", "Awash"],
    # Central Africa
    "CD": ["Airtel", "Orange", "Vodacom"],
    # Southern Africa
    "ZA": ["FNB", "Capitec", "Vodacom"],
    "ZW": ["Econet", "NetOne", "Telecel"],
    "ZM": ["Airtel", "MTN", "Vodacom"],
    "MW": ["TNM", "Airtel", "Vodacom"],
    "MZ": ["mCel", "Vodacom", "Tmcel"],
}

# gateway error codes that no retry can fix
NON_RETRYABLE_GATEWAY_CODES = frozenset({
    "INVALID_DESTINATION",
    "ACCOUNT_BLOCKED",
    "ACCOUNT_NOT_FOUND",
    "INVALID_PROVIDER",
    "LIMIT_EXCEEDED",
})


@dataclass(frozen=True)
class PayoutProgram:
    name: str
    minimum_threshold: Decimal  # USD
    minimum_account_age: int  # days
    minimum_followers: int
    minimum_engagement_rate: float  # percent
    payment_frequency: str


PAYOUT_PROGRAMS: Dict[str, PayoutProgram] = {
    p.name: p
    for p in (
        PayoutProgram("creator_rewards", Decimal("0.50"), 7, 100, 0.5, "weekly"),
        PayoutProgram("virtual_gifts", Decimal("0.50"), 3, 50, 0.1, "daily"),
        PayoutProgram("live_streaming", Decimal("0.50"), 7, 100, 0.5, "weekly"),
        PayoutProgram("brand_partnerships", Decimal("25.00"), 14, 1000, 1.0, "weekly"),
        PayoutProgram("shop_sales", Decimal("0.50"), 7, 50, 0.1, "weekly"),
        PayoutProgram("affiliate_marketing", Decimal("0.50"), 7, 100, 0.5, "weekly"),
        PayoutProgram("music_revenue", Decimal("0.50"), 7, 0, 0.0, "weekly"),
        PayoutProgram("micro_earnings", Decimal("0.01"), 0, 0, 0.0, "daily"),
    )
}


class RatePolicy:
    def __init__(
        self,
        cpm_by_region: Optional[Dict[str, Decimal]] = None,
        earning_rates: Optional[Dict[ActivityType, Decimal]] = None,
        task_rates: Optional[Dict[str, Decimal]] = None,
        daily_limits: Optional[DailyLimits] = None,
        standard_rules: Optional[WithdrawalRules] = None,
        instant_rules: Optional[WithdrawalRules] = None,
        fees: Optional[Dict[WithdrawalChannel, Dict[str, Decimal]]] = None,
        providers: Optional[Dict[WithdrawalChannel, Dict[str, List[str]]]] = None,
        programs: Optional[Dict[str, PayoutProgram]] = None,
        gift_creator_share: Decimal = GIFT_CREATOR_SHARE,
        default_fee_rate: Decimal = DEFAULT_FEE_RATE,
    ):
        self.cpm_by_region = cpm_by_region or CPM_BY_REGION
        self.earning_rates = earning_rates or EARNING_RATES
        self.task_rates = task_rates or TASK_RATES
        self.daily_limits = daily_limits or DailyLimits()
        self.rules = {
            WithdrawalChannel.STANDARD: standard_rules or WITHDRAWAL_RULES,
            WithdrawalChannel.INSTANT: instant_rules or INSTANT_WITHDRAWAL_RULES,
        }
        self.fees = fees or WITHDRAWAL_FEES
        self.providers = providers or {
            WithdrawalChannel.STANDARD: PROVIDERS_BY_COUNTRY,
            WithdrawalChannel.INSTANT: INSTANT_PROVIDERS_BY_COUNTRY,
        }
        self.programs = programs or PAYOUT_PROGRAMS
        self.gift_creator_share = gift_creator_share
        self.default_fee_rate = default_fee_rate

    def with_limits(self, **changes) -> "RatePolicy":
        """Copy of this policy with some DailyLimits fields replaced."""
        clone = RatePolicy.__new__(RatePolicy)
        clone.__dict__.update(self.__dict__)
        clone.daily_limits = replace(self.daily_limits, **changes)
        return clone

    # --- earnings ---

    def cpm_for_region(self, region: Optional[str]) -> Decimal:
        return self.cpm_by_region.get(region or "DEFAULT", self.cpm_by_region["DEFAULT"])

    def view_revenue(self, views: int, region: Optional[str], remainder_millicents: int = 0) -> Tuple[int, int]:
        """Cents earned for ``views`` plus the carried sub-cent remainder."""
        per_view_millicents = int(self.cpm_for_region(region) * 100)
        total = remainder_millicents + views * per_view_millicents
        return total // 1000, total % 1000

    def rate_for(self, activity: ActivityType) -> int:
        if activity not in self.earning_rates:
            raise KeyError(f"No flat rate for {activity.value}")
        return to_cents(self.earning_rates[activity])

    def task_rate(self, task_kind: str) -> Optional[int]:
        rate = self.task_rates.get(task_kind)
        return to_cents(rate) if rate is not None else None

    def creator_share(self, gross: int) -> int:
        return int((Decimal(gross) * self.gift_creator_share).to_integral_value(rounding=ROUND_FLOOR))

    def daily_count_limit(self, activity: ActivityType) -> Optional[int]:
        return self.daily_limits.per_activity.get(activity)

    def is_capped(self, activity: ActivityType) -> bool:
        return activity in CAPPED_ACTIVITIES

    def is_held(self, activity: ActivityType) -> bool:
        return activity in HELD_ACTIVITIES

    # --- withdrawals ---

    def rules_for(self, channel: WithdrawalChannel) -> WithdrawalRules:
        return self.rules[WithdrawalChannel(channel)]

    def providers_for(self, channel: WithdrawalChannel, country: str) -> List[str]:
        return list(self.providers[WithdrawalChannel(channel)].get(country, []))

    def is_provider_supported(self, channel: WithdrawalChannel, country: str, provider: str) -> bool:
        return provider in self.providers_for(channel, country)

    def supported_countries(self, channel: WithdrawalChannel) -> Dict[str, List[str]]:
        return {code: list(names) for code, names in self.providers[WithdrawalChannel(channel)].items()}

    def fee_rate(self, channel: WithdrawalChannel, provider: str) -> Decimal:
        return self.fees.get(WithdrawalChannel(channel), {}).get(provider, self.default_fee_rate)

    def compute_fee(self, channel: WithdrawalChannel, provider: str, amount: int) -> Tuple[int, int]:
        rate = self.fee_rate(channel, provider)
        fee = int((Decimal(amount) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return fee, amount - fee

    @staticmethod
    def is_retryable(error_code: Optional[str]) -> bool:
        return error_code not in NON_RETRYABLE_GATEWAY_CODES

    def program(self, name: str) -> Optional[PayoutProgram]:
        return self.programs.get(name)
