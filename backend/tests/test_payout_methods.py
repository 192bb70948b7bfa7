import uuid

import pytest

from conftest import DESTINATION
from monetization.errors import PayoutMethodNotFound, ProviderNotSupported, ValidationError
from monetization.models.withdrawal import WithdrawalChannel, WithdrawalStatus
from monetization.services.payout_methods import PayoutMethodBook

INSTANT = WithdrawalChannel.INSTANT
WAVE_NUMBER = "+221771234567"


class TestPayoutMethodBook:
    async def test_saved_wallet_is_encrypted_and_masked(self, services, make_user):
        user = await make_user()

        method = await services.payout_methods.add_method(user.id, "ng", "MTN", "+234 801-234-5678", label="Main")

        assert method.country == "NG"
        assert method.is_default is True
        assert DESTINATION not in method.destination
        assert services.payout_methods.cipher.decrypt(method.destination) == DESTINATION
        assert method.to_dict()["destination"] == "**********5678"
        assert method.to_dict()["label"] == "Main"

        listed = await services.payout_methods.list_methods(user.id)
        assert [m.id for m in listed] == [method.id]

    async def test_same_wallet_is_saved_once(self, services, make_user):
        user = await make_user()
        other = await make_user()
        await services.payout_methods.add_method(user.id, "NG", "MTN", DESTINATION)

        with pytest.raises(ValidationError, match="already saved"):
            await services.payout_methods.add_method(user.id, "NG", "MTN", "+234 8012345678")

        # another user may save the same number
        assert await services.payout_methods.add_method(other.id, "NG", "MTN", DESTINATION)

    async def test_unsupported_provider_and_bad_number(self, services, make_user):
        user = await make_user()

        with pytest.raises(ProviderNotSupported):
            await services.payout_methods.add_method(user.id, "KE", "Glo", DESTINATION)
        with pytest.raises(ValidationError):
            await services.payout_methods.add_method(user.id, "NG", "MTN", "12")

        assert await services.payout_methods.list_methods(user.id) == []

    async def test_limit_on_saved_wallets(self, services, make_user, clock):
        user = await make_user()
        book = PayoutMethodBook(
            services.session_factory, services.policy, services.payout_methods.cipher, clock=clock, max_methods=2
        )
        await book.add_method(user.id, "NG", "MTN", "+2348010000001")
        await book.add_method(user.id, "NG", "MTN", "+2348010000002")

        with pytest.raises(ValidationError, match="At most 2"):
            await book.add_method(user.id, "NG", "MTN", "+2348010000003")

    async def test_default_moves_and_is_promoted_on_remove(self, services, make_user, clock):
        user = await make_user()
        first = await services.payout_methods.add_method(user.id, "NG", "MTN", DESTINATION)
        clock.advance(minutes=1)
        second = await services.payout_methods.add_method(user.id, "SN", "Wave", WAVE_NUMBER)
        clock.advance(minutes=1)
        third = await services.payout_methods.add_method(user.id, "NG", "MTN", "+2348010000003", make_default=True)

        listed = await services.payout_methods.list_methods(user.id)
        assert [m.id for m in listed] == [third.id, second.id, first.id]
        assert [m.is_default for m in listed] == [True, False, False]

        await services.payout_methods.set_default(user.id, first.id)
        assert (await services.payout_methods.default_method(user.id)).id == first.id

        await services.payout_methods.remove_method(user.id, first.id)
        listed = await services.payout_methods.list_methods(user.id)
        assert [m.id for m in listed] == [third.id, second.id]
        assert listed[0].is_default is True

    async def test_removed_wallet_can_be_saved_again(self, services, make_user):
        user = await make_user()
        method = await services.payout_methods.add_method(user.id, "NG", "MTN", DESTINATION)
        await services.payout_methods.remove_method(user.id, method.id)
        assert await services.payout_methods.default_method(user.id) is None

        again = await services.payout_methods.add_method(user.id, "NG", "MTN", DESTINATION)

        assert again.id == method.id
        assert again.is_default is True

    async def test_methods_of_other_users_are_hidden(self, services, make_user):
        owner = await make_user()
        stranger = await make_user()
        method = await services.payout_methods.add_method(owner.id, "NG", "MTN", DESTINATION)

        with pytest.raises(PayoutMethodNotFound):
            await services.payout_methods.get_method(stranger.id, method.id)
        with pytest.raises(PayoutMethodNotFound):
            await services.payout_methods.remove_method(stranger.id, method.id)
        with pytest.raises(PayoutMethodNotFound):
            await services.payout_methods.set_default(stranger.id, uuid.uuid4())


class TestWithdrawingToSavedWallet:
    async def test_withdraw_to_chosen_method(self, services, make_user, fund, gateway, clock):
        user = await make_user()
        await fund(user.id, 1000)
        await services.payout_methods.add_method(user.id, "NG", "MTN", DESTINATION)
        backup = await services.payout_methods.add_method(user.id, "NG", "MTN", "+2348010000002")

        withdrawal = await services.payouts.initiate_withdrawal(
            user.id, 300, channel=INSTANT, payout_method_id=backup.id
        )

        assert withdrawal.status == WithdrawalStatus.COMPLETED.value
        assert withdrawal.destination_hint == "**********0002"
        assert withdrawal.country == "NG"
        assert gateway.orders[0].destination == "+2348010000002"

        used = await services.payout_methods.get_method(user.id, backup.id)
        assert used.last_used_at == clock()

    async def test_default_method_is_used_when_nothing_is_given(self, services, make_user, fund, gateway):
        user = await make_user()
        await fund(user.id, 1000)
        await services.payout_methods.add_method(user.id, "NG", "MTN", DESTINATION)

        withdrawal = await services.payouts.initiate_withdrawal(user.id, 300, channel=INSTANT)

        assert withdrawal.status == WithdrawalStatus.COMPLETED.value
        assert withdrawal.provider == "MTN"
        assert gateway.orders[0].destination == DESTINATION

    async def test_no_destination_and_no_saved_method(self, services, make_user, fund, gateway):
        user = await make_user()
        await fund(user.id, 1000)

        with pytest.raises(ValidationError, match="no saved payout method"):
            await services.payouts.initiate_withdrawal(user.id, 300, channel=INSTANT)
        with pytest.raises(ValidationError, match="required"):
            await services.payouts.initiate_withdrawal(user.id, 300, "NG", None, DESTINATION, INSTANT)

        assert gateway.orders == []

    async def test_someone_elses_method_is_refused(self, services, make_user, fund, gateway):
        owner = await make_user()
        thief = await make_user()
        await fund(thief.id, 1000)
        method = await services.payout_methods.add_method(owner.id, "NG", "MTN", DESTINATION)

        with pytest.raises(PayoutMethodNotFound):
            await services.payouts.initiate_withdrawal(thief.id, 300, channel=INSTANT, payout_method_id=method.id)

        assert gateway.orders == []
        assert (await services.accrual.get_balance(thief.id)).reserved == 0
