import asyncio
import uuid
from datetime import timedelta

import pytest

from monetization.errors import EarningNotFound, InvalidTransition, ValidationError
from monetization.models.earning import ActivityType, EarningEvent, EarningStatus
from monetization.services.accrual import AccrualEngine, Rejected


class TestActivityAccrual:
    async def test_watch_is_credited(self, services, make_user):
        user = await make_user()
        event = await services.accrual.record_activity(user.id, ActivityType.WATCH, watch_seconds=45)

        assert isinstance(event, EarningEvent)
        assert event.amount == 2
        assert event.status == EarningStatus.COMPLETED.value

        balance = await services.accrual.get_balance(user.id)
        assert balance.total_earned == 2
        assert balance.available == 2
        assert balance.daily_earned == 2

    async def test_guards_reject_without_crediting(self, services, make_user):
        user = await make_user()

        short_watch = await services.accrual.record_activity(user.id, "watch", watch_seconds=10)
        short_comment = await services.accrual.record_activity(user.id, "comment", comment_length=2)
        no_poll = await services.accrual.record_activity(user.id, "poll_vote")
        bad_task = await services.accrual.record_activity(user.id, "task", task_kind="mining")
        zero = await services.accrual.record_activity(user.id, "like", quantity=0)

        assert short_watch == Rejected("WATCH_TOO_SHORT", "Watch at least 30s to earn")
        assert short_comment.code == "COMMENT_TOO_SHORT"
        assert no_poll.code == "MISSING_REFERENCE"
        assert bad_task.code == "UNKNOWN_TASK"
        assert zero.code == "INVALID_QUANTITY"

        balance = await services.accrual.get_balance(user.id)
        assert balance.total_earned == 0

    async def test_unknown_and_blocked_users(self, services, make_user):
        blocked = await make_user(is_blocked=True)

        missing = await services.accrual.record_activity(uuid.uuid4(), "like")
        refused = await services.accrual.record_activity(blocked.id, "like")

        assert missing.code == "USER_NOT_FOUND"
        assert refused.code == "USER_BLOCKED"

    async def test_daily_watch_count_limit(self, services, make_user):
        user = await make_user()

        first = await services.accrual.record_activity(user.id, "watch", quantity=499, watch_seconds=60)
        last = await services.accrual.record_activity(user.id, "watch", watch_seconds=60)
        over = await services.accrual.record_activity(user.id, "watch", watch_seconds=60)

        assert not isinstance(first, Rejected)
        assert not isinstance(last, Rejected)
        assert over == Rejected("DAILY_COUNT_LIMIT", "Daily watch limit reached: 500/500")

        balance = await services.accrual.get_balance(user.id)
        assert balance.total_earned == 1000

    async def test_daily_cap_resets_next_day(self, services, make_user, clock):
        user = await make_user()
        engine = AccrualEngine(
            services.session_factory, services.ledger, services.policy.with_limits(max_daily_earnings=5), clock
        )

        assert not isinstance(await engine.record_activity(user.id, "like", quantity=5), Rejected)
        capped = await engine.record_activity(user.id, "like")
        assert capped.code == "DAILY_CAP"

        clock.advance(days=1)
        assert not isinstance(await engine.record_activity(user.id, "like"), Rejected)

        balance = await engine.get_balance(user.id)
        assert balance.total_earned == 6
        assert balance.daily_earned == 1

    async def test_gifts_are_not_capped(self, services, make_user, clock):
        creator = await make_user()
        fan = await make_user()
        engine = AccrualEngine(
            services.session_factory, services.ledger, services.policy.with_limits(max_daily_earnings=5), clock
        )

        gift = await engine.record_activity(creator.id, "gift", sender_id=fan.id, gross_amount=1000, reference="g-1")
        assert gift.amount == 800

        balance = await engine.get_balance(creator.id)
        assert balance.available == 800
        assert balance.daily_earned == 0

    async def test_self_gift_and_duplicate_gift(self, services, make_user):
        creator = await make_user()
        fan = await make_user()

        own = await services.accrual.record_activity(creator.id, "tip", sender_id=creator.id, gross_amount=500)
        assert own.code == "SELF_GIFT"

        await services.accrual.record_activity(creator.id, "tip", sender_id=fan.id, gross_amount=500, reference="t-1")
        again = await services.accrual.record_activity(creator.id, "tip", sender_id=fan.id, gross_amount=500, reference="t-1")
        assert again.code == "DUPLICATE"

    async def test_poll_vote_once_per_poll(self, services, make_user):
        user = await make_user()

        assert not isinstance(await services.accrual.record_activity(user.id, "poll_vote", reference="poll-1"), Rejected)
        again = await services.accrual.record_activity(user.id, "poll_vote", reference="poll-1")
        assert again == Rejected("DUPLICATE", "Already voted in this poll")
        assert not isinstance(await services.accrual.record_activity(user.id, "poll_vote", reference="poll-2"), Rejected)

    async def test_challenge_once_per_day(self, services, make_user, clock):
        user = await make_user()

        await services.accrual.record_activity(user.id, "challenge", reference="dance")
        same_day = await services.accrual.record_activity(user.id, "challenge", reference="dance")
        assert same_day.code == "DUPLICATE"

        clock.advance(days=1)
        next_day = await services.accrual.record_activity(user.id, "challenge", reference="dance")
        assert next_day.is_held


class TestViews:
    async def test_thousand_us_views(self, services, make_user):
        creator = await make_user(region="US")
        event = await services.accrual.record_views(creator.id, 1000)

        assert event.amount == 650
        assert event.activity == ActivityType.VIEW.value

    async def test_sub_cent_batches_carry_over(self, services, make_user):
        creator = await make_user(region="US")

        assert await services.accrual.record_views(creator.id, 1) is None
        event = await services.accrual.record_views(creator.id, 1)

        assert event.amount == 1
        balance = await services.accrual.get_balance(creator.id)
        assert balance.total_earned == 1
        assert balance.view_remainder_millicents == 300

    async def test_region_override(self, services, make_user):
        creator = await make_user(region="US")
        event = await services.accrual.record_views(creator.id, 1000, region="IN")
        assert event.amount == 250

    async def test_non_positive_views(self, services, make_user):
        creator = await make_user()
        with pytest.raises(ValidationError):
            await services.accrual.record_views(creator.id, 0)


class TestHeldEarnings:
    async def test_invite_is_held_until_verified(self, services, make_user):
        referrer = await make_user()
        friend = await make_user()

        event = await services.accrual.record_activity(referrer.id, "invite", referred_user_id=friend.id)
        assert event.status == EarningStatus.PENDING.value

        balance = await services.accrual.get_balance(referrer.id)
        assert balance.total_earned == 100
        assert balance.held == 100
        assert balance.available == 0

        verified = await services.accrual.verify_earning(event.id)
        assert verified.status == EarningStatus.VERIFIED.value

        balance = await services.accrual.get_balance(referrer.id)
        assert balance.held == 0
        assert balance.available == 100

        with pytest.raises(InvalidTransition):
            await services.accrual.verify_earning(event.id)

    async def test_referral_guards(self, services, make_user):
        referrer = await make_user()
        other = await make_user()
        friend = await make_user()

        own = await services.accrual.record_activity(referrer.id, "invite", referred_user_id=referrer.id)
        assert own.code == "SELF_REFERRAL"

        await services.accrual.record_activity(referrer.id, "invite", referred_user_id=friend.id)
        stolen = await services.accrual.record_activity(other.id, "invite", referred_user_id=friend.id)
        assert stolen == Rejected("DUPLICATE", "User was already referred")

    async def test_rejected_earning_is_reversed(self, services, make_user):
        referrer = await make_user()
        friend = await make_user()
        event = await services.accrual.record_activity(referrer.id, "invite", referred_user_id=friend.id)

        rejected = await services.accrual.reject_earning(event.id, "fake account")
        assert rejected.rejection_reason == "fake account"

        balance = await services.accrual.get_balance(referrer.id)
        assert balance.total_earned == 0
        assert balance.held == 0

        stats = await services.accrual.earning_statistics(user_id=referrer.id)
        assert stats["rejected"] == 1.0
        assert stats["total_earned"] == 0.0

    async def test_unknown_earning(self, services):
        with pytest.raises(EarningNotFound):
            await services.accrual.verify_earning(uuid.uuid4())

    async def test_due_verifications_are_released(self, services, make_user, clock):
        referrer = await make_user()
        friend = await make_user()
        await services.accrual.record_activity(referrer.id, "invite", referred_user_id=friend.id)

        assert await services.accrual.release_due_verifications(timedelta(hours=24)) == 0
        clock.advance(hours=25)
        assert await services.accrual.release_due_verifications(timedelta(hours=24)) == 1

        balance = await services.accrual.get_balance(referrer.id)
        assert balance.available == 100


class TestReads:
    async def test_history_and_stats(self, services, make_user):
        user = await make_user()
        await services.accrual.record_activity(user.id, "like", quantity=3)
        await services.accrual.record_activity(user.id, "share")

        history = await services.accrual.get_history(user.id)
        assert len(history) == 2
        likes = await services.accrual.get_history(user.id, activity=ActivityType.LIKE)
        assert [e.quantity for e in likes] == [3]

        stats = await services.accrual.earning_statistics(user_id=user.id)
        assert stats["total_earned"] == 0.08
        assert stats["by_activity"]["like"] == {"count": 1, "amount": 0.03}

    async def test_top_earners(self, services, make_user):
        small = await make_user()
        big = await make_user()
        await services.accrual.record_activity(small.id, "like")
        await services.accrual.record_activity(big.id, "share", quantity=2)

        top = await services.accrual.top_earners(limit=2)
        assert [row["user_id"] for row in top] == [str(big.id), str(small.id)]

    async def test_ledger_audit_matches_events(self, services, make_user):
        user = await make_user()
        friend = await make_user()
        await services.accrual.record_activity(user.id, "like", quantity=4)
        await services.accrual.record_activity(user.id, "invite", referred_user_id=friend.id)

        async with services.session_factory() as db:
            report = await services.ledger.audit(db, user.id)

        assert report["consistent"] is True
        assert report["balance"]["total_earned"] == 104
        assert report["balance"]["held"] == 100




class TestConcurrentLedger:
    async def test_credits_racing_a_withdrawal_are_all_kept(self, services, make_user, fund):
        creator = await make_user()
        fan = await make_user()
        await fund(creator.id, 1000)

        credits = (
            [services.accrual.record_activity(creator.id, "watch", watch_seconds=45) for _ in range(10)]
            + [services.accrual.record_activity(creator.id, "like") for _ in range(10)]
            + [
                services.accrual.record_activity(
                    creator.id, "gift", sender_id=fan.id, gross_amount=1000, reference=f"g-{i}"
                )
                for i in range(3)
            ]
        )
        withdrawals = [
            services.payouts.initiate_withdrawal(creator.id, 400, "NG", "MTN", "+2348012345678", "instant")
            for _ in range(2)
        ]

        results = await asyncio.gather(*credits, *withdrawals, return_exceptions=True)

        assert not [r for r in results if isinstance(r, (Exception, Rejected))]
        credited = sum(r.amount for r in results[:len(credits)])
        assert credited == 10 * 2 + 10 * 1 + 3 * 800

        balance = await services.accrual.get_balance(creator.id)
        assert balance.total_earned == 1000 + credited
        assert balance.total_withdrawn == 800
        assert balance.reserved == 0
        assert balance.pending_balance >= 0
        assert balance.pending_balance == 1000 + credited - 800

        async with services.session_factory() as db:
            report = await services.ledger.audit(db, creator.id)
        assert report["consistent"] is True
