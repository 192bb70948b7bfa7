from decimal import Decimal

from monetization.models.earning import ActivityType
from monetization.models.withdrawal import WithdrawalChannel
from monetization.services.policy import RatePolicy, from_cents, to_cents


class TestMoney:
    def test_to_cents_rounds_half_up(self):
        assert to_cents("1.00") == 100
        assert to_cents("0.015") == 2
        assert to_cents(Decimal("0.014")) == 1
        assert to_cents(10) == 1000

    def test_from_cents(self):
        assert from_cents(980) == Decimal("9.80")
        assert from_cents(1) == Decimal("0.01")


class TestEarningRates:
    def test_view_revenue_for_region(self):
        policy = RatePolicy()
        assert policy.view_revenue(1000, "US") == (650, 0)
        assert policy.view_revenue(1000, "NOWHERE") == (350, 0)
        assert policy.view_revenue(1000, None) == (350, 0)

    def test_view_revenue_carries_sub_cent_remainder(self):
        policy = RatePolicy()
        cents, remainder = policy.view_revenue(1, "US")
        assert (cents, remainder) == (0, 650)

        cents, remainder = policy.view_revenue(1, "US", remainder)
        assert (cents, remainder) == (1, 300)

    def test_flat_and_task_rates(self):
        policy = RatePolicy()
        assert policy.rate_for(ActivityType.WATCH) == 2
        assert policy.rate_for(ActivityType.INVITE) == 100
        assert policy.task_rate("app_test") == 150
        assert policy.task_rate("unknown") is None

    def test_creator_share_floors(self):
        policy = RatePolicy()
        assert policy.creator_share(1000) == 800
        assert policy.creator_share(101) == 80

    def test_capped_and_held_activities(self):
        policy = RatePolicy()
        assert policy.is_capped(ActivityType.WATCH)
        assert not policy.is_capped(ActivityType.GIFT)
        assert not policy.is_capped(ActivityType.VIEW)
        assert policy.is_held(ActivityType.INVITE)
        assert not policy.is_held(ActivityType.LIKE)

    def test_with_limits_leaves_original_untouched(self):
        policy = RatePolicy()
        strict = policy.with_limits(max_daily_earnings=5)
        assert strict.daily_limits.max_daily_earnings == 5
        assert policy.daily_limits.max_daily_earnings == 1000
        assert strict.cpm_by_region is policy.cpm_by_region


class TestWithdrawalRules:
    def test_fee_rounding(self):
        policy = RatePolicy()
        assert policy.compute_fee(WithdrawalChannel.STANDARD, "Wave", 1000) == (20, 980)
        assert policy.compute_fee(WithdrawalChannel.STANDARD, "MTN", 1000) == (50, 950)
        assert policy.compute_fee(WithdrawalChannel.INSTANT, "MTN", 1) == (0, 1)
        assert policy.compute_fee(WithdrawalChannel.INSTANT, "Equity", 1000) == (20, 980)

    def test_provider_tables_per_channel(self):
        policy = RatePolicy()
        assert policy.is_provider_supported(WithdrawalChannel.INSTANT, "ZA", "FNB")
        assert not policy.is_provider_supported(WithdrawalChannel.STANDARD, "ZA", "FNB")
        assert "Safaricom" in policy.providers_for(WithdrawalChannel.STANDARD, "KE")
        assert policy.providers_for(WithdrawalChannel.STANDARD, "XX") == []

    def test_retryable_codes(self):
        assert RatePolicy.is_retryable("PROVIDER_UNAVAILABLE")
        assert RatePolicy.is_retryable("TIMEOUT")
        assert not RatePolicy.is_retryable("INVALID_DESTINATION")
        assert not RatePolicy.is_retryable("ACCOUNT_BLOCKED")
