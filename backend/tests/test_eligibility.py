import uuid

import pytest

from monetization.errors import ValidationError
from monetization.models.withdrawal import WithdrawalChannel


class TestStandardEligibility:
    async def test_eligible_account(self, services, make_user, fund):
        user = await make_user(age_days=40)
        await fund(user.id, 2000)

        report = await services.gate.check_eligibility(user.id, WithdrawalChannel.STANDARD, 1000, "SN", "Wave")

        assert report.eligible is True
        assert report.reasons == []
        assert report.details["risk_score"] == 0
        assert report.details["activities"] == 10

    async def test_young_account(self, services, make_user, fund):
        user = await make_user(age_days=3)
        await fund(user.id, 2000)

        report = await services.gate.check_eligibility(user.id, "standard", 1000, "SN", "Wave")

        assert report.eligible is False
        assert "Account too young: 3/7 days" in report.reasons

    async def test_every_failing_rule_is_reported(self, services, make_user, fund):
        user = await make_user(age_days=40)
        await fund(user.id, 2000, events=1)

        report = await services.gate.check_eligibility(user.id, "standard", 5000, "KE", "Glo")

        assert report.reasons == [
            "Insufficient balance. Available: $20.00, requested: $50.00",
            "Glo not available in KE",
            "Not enough activity: 1/10",
        ]

    async def test_amount_bounds(self, services, make_user, fund):
        user = await make_user()
        await fund(user.id, 2000)

        low = await services.gate.check_eligibility(user.id, "standard", 50, "SN", "Wave")
        assert "Minimum withdrawal is $1.00" in low.reasons

    async def test_daily_withdrawal_limit(self, services, make_user, fund):
        user = await make_user()
        await fund(user.id, 5000)
        for _ in range(3):
            await services.payouts.initiate_withdrawal(user.id, 100, "SN", "Wave", "+221771234567")

        report = await services.gate.check_eligibility(user.id, "standard", 100, "SN", "Wave")
        assert "Daily withdrawal limit reached: 3/3" in report.reasons

    async def test_instant_withdrawals_do_not_count_against_standard_limits(self, services, make_user, fund):
        user = await make_user()
        await fund(user.id, 5000)
        for _ in range(3):
            await services.payouts.initiate_withdrawal(user.id, 100, "NG", "MTN", "+2348012345678", "instant")

        report = await services.gate.check_eligibility(user.id, "standard", 100, "SN", "Wave")

        assert report.eligible is True
        assert report.reasons == []

    async def test_unknown_user(self, services):
        report = await services.gate.check_eligibility(uuid.uuid4(), "standard", 100, "SN", "Wave")
        assert report.reasons == ["User not found"]


class TestInstantEligibility:
    async def test_instant_skips_account_checks(self, services, make_user):
        user = await make_user(age_days=0, verified=False)

        report = await services.gate.check_eligibility(user.id, WithdrawalChannel.INSTANT, 1, "NG", "MTN")

        assert report.eligible is True

    async def test_instant_still_checks_provider_and_ceiling(self, services, make_user):
        user = await make_user(age_days=0)

        report = await services.gate.check_eligibility(user.id, "instant", 1_000_001, "NG", "Safaricom")

        assert report.reasons == ["Maximum instant withdrawal is $10000.00", "Safaricom not available in NG"]


class TestRiskScore:
    async def test_new_unverified_account(self, services, make_user):
        user = await make_user(age_days=1, verified=False)
        async with services.session_factory() as db:
            assert await services.gate.risk_score(db, user) == 35

    async def test_rejected_earning_raises_risk(self, services, make_user):
        user = await make_user(age_days=10)
        friend = await make_user()
        event = await services.accrual.record_activity(user.id, "invite", referred_user_id=friend.id)
        await services.accrual.reject_earning(event.id, "self-invite ring")

        async with services.session_factory() as db:
            assert await services.gate.risk_score(db, user) == 50


class TestPrograms:
    async def test_program_requirements(self, services, make_user):
        user = await make_user(age_days=5, followers_count=10, engagement_rate=0.05)

        report = await services.gate.check_program(user.id, "virtual_gifts")

        assert report.eligible is False
        assert report.reasons == [
            "Not enough followers: 10/50",
            "Engagement rate too low: 0.05%/0.1%",
            "Earnings below threshold: $0.00/$0.50",
        ]
        assert report.details["payment_frequency"] == "daily"

    async def test_micro_earnings_for_everyone(self, services, make_user, fund):
        user = await make_user(age_days=0)
        await fund(user.id, 1, events=1)

        report = await services.gate.check_program(user.id, "micro_earnings")
        assert report.eligible is True

    async def test_unknown_program(self, services, make_user):
        user = await make_user()
        with pytest.raises(ValidationError):
            await services.gate.check_program(user.id, "lottery")
