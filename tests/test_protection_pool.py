"""Unitary tests for the protection pool"""
import pytest
from ethproto.contracts import ERC20Token, RevertError
from ethproto.wadray import _W, Wad

from cdspool.premium import calculate_accrued_premium
from cdspool.protocol import ProtectionPool, ProtectionPoolPhase, ProtectionPurchaseParams
from cdspool.utils import DAY, time_control

from . import MAX_UINT, build_market


@pytest.fixture
def market():
    return build_market()


@pytest.fixture
def pool(market):
    return market.pools["sToken11"]


def purchase(amount, lending_pool="LENDPOOL1", position_id=1, days=50):
    return ProtectionPurchaseParams(
        lending_pool=lending_pool,
        position_id=position_id,
        protection_amount=amount,
        protection_duration_in_seconds=days * DAY,
    )


def test_pool_phases(pool):
    assert pool.phase == ProtectionPoolPhase.OPEN_TO_SELLERS
    assert len(pool.events_named("ProtectionPoolInitialized")) == 1

    with pytest.raises(RevertError, match="ProtectionPoolInOpenToSellersPhase"):
        pool.buy_protection("BUYER1", purchase(_W(10000)), _W(1000))

    pool.deposit("LP1", _W(50000))
    with pytest.raises(RevertError, match="ProtectionPoolHasNotEnoughCapital"):
        pool.move_pool_phase()

    pool.deposit("LP2", _W(50000))
    with pool.as_("LP1"), pytest.raises(RevertError, match="Ownable: caller is not the owner"):
        pool.move_pool_phase()

    assert pool.move_pool_phase() == ProtectionPoolPhase.OPEN_TO_BUYERS
    with pytest.raises(RevertError, match="ProtectionPoolInOpenToBuyersPhase"):
        pool.deposit("LP3", _W(1000))

    pool.buy_protection("BUYER2", purchase(_W(80000), "LENDPOOL2", 2), _W(5000))
    assert pool.calculate_leverage_ratio() == _W("1.25")
    with pytest.raises(RevertError, match="ProtectionPoolLeverageRatioTooHigh"):
        pool.move_pool_phase()

    pool.buy_protection("BUYER1", purchase(_W(20000)), _W(5000))
    assert pool.calculate_leverage_ratio() == _W(1)
    assert pool.move_pool_phase() == ProtectionPoolPhase.OPEN
    assert pool.move_pool_phase() == ProtectionPoolPhase.OPEN

    phases = [event.args["phase"] for event in pool.events_named("ProtectionPoolPhaseUpdated")]
    assert phases == ["OpenToBuyers", "Open"]


def test_pool_initialization(pool):
    event = pool.events_named("ProtectionPoolInitialized")[0]
    assert event.args["pool_name"] == "sToken11"

    # Index 0 holds a placeholder that is never exposed
    assert len(pool.protections) == 1
    assert pool.get_all_protections() == []
    with pytest.raises(RevertError, match="InvalidProtectionIndex"):
        pool.get_protection(0)

    pool.deposit("LP1", _W(1000))
    assert pool.total_stoken_underlying == _W(1000)
    assert len(pool.protections) == 1


def test_deposit(market, pool):
    with pytest.raises(RevertError, match="ZeroDepositAmount"):
        pool.deposit("LP1", _W(0))

    assert pool.deposit("LP1", _W(1000)) == _W(1000)
    assert pool.balance_of("LP1") == _W(1000)
    assert market.currency.balance_of("LP1") == _W(199000)
    assert market.currency.balance_of(pool.contract_id) == _W(1000)
    assert pool.total_stoken_underlying == _W(1000)

    assert pool.deposit("LP2", _W(500), "LP3") == _W(500)
    assert pool.balance_of("LP3") == _W(500)
    assert pool.balance_of("LP2") == Wad(0)
    assert market.currency.balance_of("LP2") == _W(199500)

    events = pool.events_named("ProtectionSold")
    assert len(events) == 2
    assert events[1].args["receiver"] == "LP3"


def test_deposit_above_ceiling_rejected(market, pool):
    pool.deposit("LP1", _W(100000))
    pool.move_pool_phase()
    pool.buy_protection("BUYER1", purchase(_W(100000)), _W(5000))
    assert pool.calculate_leverage_ratio() == _W(1)
    pool.move_pool_phase()

    currency_balance = market.currency.balance_of("LP2")
    pool_balance = market.currency.balance_of(pool.contract_id)
    events = len(pool.events)

    with pytest.raises(RevertError, match="ProtectionPoolLeverageRatioTooHigh"):
        pool.deposit("LP2", _W(1))

    assert market.currency.balance_of("LP2") == currency_balance
    assert market.currency.balance_of(pool.contract_id) == pool_balance
    assert pool.balance_of("LP2") == Wad(0)
    assert pool.total_stoken_underlying == _W(100000)
    assert pool.total_supply() == _W(100000)
    assert len(pool.events) == events


def test_buy_protection_errors(market, pool):
    pool.deposit("LP1", _W(100000))
    pool.move_pool_phase()

    with pytest.raises(RevertError, match="ZeroProtectionAmount"):
        pool.buy_protection("BUYER1", purchase(_W(0)), _W(5000))
    with pytest.raises(RevertError, match="ProtectionDurationTooShort"):
        pool.buy_protection("BUYER1", purchase(_W(10000), days=9), _W(5000))
    with pytest.raises(RevertError, match="ProtectionDurationTooLong"):
        pool.buy_protection("BUYER1", purchase(_W(10000), days=61), _W(5000))
    with pytest.raises(RevertError, match="LendingPoolNotSupported"):
        pool.buy_protection("BUYER1", purchase(_W(10000), "LENDPOOLX"), _W(5000))
    with pytest.raises(RevertError, match="ProtectionPurchaseNotAllowed"):
        pool.buy_protection("BUYER1", purchase(_W(100001)), _W(5000))
    with pytest.raises(RevertError, match="ProtectionPurchaseNotAllowed"):
        pool.buy_protection("BUYER1", purchase(_W(10000), "LENDPOOL2", 2), _W(5000))
    with pytest.raises(RevertError, match="PremiumExceedsMaxPremiumAmount"):
        pool.buy_protection("BUYER1", purchase(_W(10000)), _W(1))
    with pytest.raises(RevertError, match="ProtectionPoolLeverageRatioTooLow"):
        pool.buy_protection("BUYER2", purchase(_W(210000), "LENDPOOL2", 2), _W(10000))

    assert pool.total_protection == Wad(0)
    assert pool.total_premium == Wad(0)
    assert pool.events_named("ProtectionBought") == []
    assert market.currency.balance_of("BUYER1") == _W(20000)

    time_control.fast_forward(30 * DAY + 1)
    market.default_state_manager.assess_states()
    with pytest.raises(RevertError, match="LendingPoolHasLatePayment"):
        pool.buy_protection("BUYER1", purchase(_W(10000), days=20), _W(5000))


def test_buy_protection(market, pool):
    pool.deposit("LP1", _W(100000))
    pool.move_pool_phase()

    index = pool.buy_protection("BUYER2", purchase(_W(180000), "LENDPOOL2", 2), _W(10000))
    assert index == 1
    protection = pool.get_protection(index)
    assert protection.buyer == "BUYER2"
    assert not protection.is_minimum_premium
    assert protection.start_timestamp == time_control.now
    assert protection.expiration == time_control.now + 50 * DAY
    premium = protection.protection_premium
    assert _W(5000) < premium < _W(7000)

    assert pool.total_protection == _W(180000)
    assert pool.total_premium == premium
    assert pool.get_premium_paid("BUYER2", "LENDPOOL2") == premium
    assert market.currency.balance_of("BUYER2") == _W(20000) - premium
    assert pool.get_all_protections("BUYER2") == [protection]
    assert pool.get_all_protections("BUYER1") == []

    detail = pool.get_lending_pool_detail("LENDPOOL2")
    assert detail.total_protection == _W(180000)
    assert detail.total_premium == premium
    assert list(detail.active_protection_indexes) == [1]

    with pytest.raises(RevertError, match="InvalidProtectionIndex"):
        pool.get_protection(0)

    # For a short protection the risk premium falls under the minimum premium
    index = pool.buy_protection("BUYER1", purchase(_W(10000), days=10), _W(5000))
    assert index == 2
    assert pool.get_protection(index).is_minimum_premium
    assert pool.total_protection == _W(190000)


def test_premium_accrual_and_expiration(market, pool):
    pool.deposit("LP1", _W(100000))
    pool.move_pool_phase()
    index = pool.buy_protection("BUYER2", purchase(_W(180000), "LENDPOOL2", 2), _W(10000))
    protection = pool.get_protection(index)
    premium, k, lambda_ = protection.protection_premium, protection.k, protection.lambda_

    time_control.fast_forward(10 * DAY)
    accrued = pool.accrue_premium_and_expire_protections()
    assert accrued == calculate_accrued_premium(0, 10 * DAY, k, lambda_)
    assert pool.total_premium_accrued == accrued
    assert pool.total_stoken_underlying == _W(100000) + accrued
    assert pool.convert_to_underlying(_W(100000)) == pool.total_stoken_underlying
    assert len(pool.events_named("PremiumAccrued")) == 1

    # Nothing more to accrue at the same timestamp
    assert pool.accrue_premium_and_expire_protections() == Wad(0)

    time_control.fast_forward(40 * DAY + 1)
    pool.accrue_premium_and_expire_protections(["LENDPOOL2"])
    # The whole premium accrues, no matter how the duration was split
    assert pool.total_premium_accrued == premium
    assert pool.total_stoken_underlying == _W(100000) + premium

    assert pool.get_protection(index).expired
    assert pool.get_all_protections() == []
    assert pool.total_protection == Wad(0)
    assert pool.get_lending_pool_detail("LENDPOOL2").total_protection == Wad(0)
    assert len(pool.events_named("ProtectionExpired")) == 1

    time_control.fast_forward(DAY)
    assert pool.accrue_premium_and_expire_protections() == Wad(0)


def test_renew_protection(market, pool):
    pool.deposit("LP1", _W(100000))
    pool.move_pool_phase()
    pool.buy_protection("BUYER1", purchase(_W(60000), days=20), _W(5000))

    with pytest.raises(RevertError, match="NoExpiredProtectionToRenew"):
        pool.renew_protection("BUYER1", purchase(_W(60000), days=20), _W(5000))

    time_control.fast_forward(20 * DAY)
    with pytest.raises(RevertError, match="CanNotRenewProtectionWithHigherRenewalAmount"):
        pool.renew_protection("BUYER1", purchase(_W(60001), days=20), _W(5000))

    index = pool.renew_protection("BUYER1", purchase(_W(50000), days=20), _W(5000))
    assert index == 2
    assert [p.purchase_params.protection_amount for p in pool.get_all_protections("BUYER1")] == [_W(50000)]
    assert pool.total_protection == _W(50000)
    assert len(pool.events_named("ProtectionRenewed")) == 1
    assert len(pool.events_named("ProtectionExpired")) == 1

    with pytest.raises(RevertError, match="NoExpiredProtectionToRenew"):
        pool.renew_protection("BUYER1", purchase(_W(50000), days=20), _W(5000))


def test_renew_protection_after_grace_period(market, pool):
    pool.deposit("LP1", _W(100000))
    pool.move_pool_phase()
    pool.buy_protection("BUYER1", purchase(_W(60000), days=20), _W(5000))

    time_control.fast_forward(34 * DAY + 1)
    with pytest.raises(RevertError, match="CanNotRenewProtectionAfterGracePeriod"):
        pool.renew_protection("BUYER1", purchase(_W(60000), days=20), _W(5000))


def test_withdrawal(market, pool):
    pool.deposit("LP1", _W(100000))
    pool.deposit("LP2", _W(50000))

    with pytest.raises(RevertError, match="NoWithdrawalRequested"):
        pool.withdraw("LP1", _W(1000))
    with pytest.raises(RevertError, match="InsufficientSTokenBalance"):
        pool.request_withdrawal("LP1", _W(200000))

    assert pool.request_withdrawal("LP1", _W(40000)) == 2
    # A later request for the same cycle replaces the previous one
    assert pool.request_withdrawal("LP1", _W(30000)) == 2
    assert pool.get_withdrawal_request("LP1", 2) == _W(30000)
    assert pool.get_total_requested_withdrawal(2) == _W(30000)

    pool.request_withdrawal("LP2", _W(50000))
    assert pool.get_total_requested_withdrawal(2) == _W(80000)

    # Transferring sTokens caps the pending request to the remaining balance
    pool.transfer("LP2", "LP3", _W(20000))
    assert pool.get_withdrawal_request("LP2", 2) == _W(30000)
    assert pool.get_total_requested_withdrawal(2) == _W(60000)

    time_control.fast_forward(11 * DAY)
    with pytest.raises(RevertError, match="ProtectionPoolIsNotOpen"):
        pool.withdraw("LP1", _W(30000))

    time_control.fast_forward(49 * DAY + 1)
    with pytest.raises(RevertError, match="WithdrawalHigherThanRequested"):
        pool.withdraw("LP1", _W(40000))

    assert pool.withdraw("LP1", _W(30000)) == _W(30000)
    assert market.currency.balance_of("LP1") == _W(130000)
    assert pool.balance_of("LP1") == _W(70000)
    assert pool.total_stoken_underlying == _W(120000)
    assert pool.get_withdrawal_request("LP1") == Wad(0)
    assert pool.get_total_requested_withdrawal() == _W(30000)
    assert len(pool.events_named("WithdrawalMade")) == 1

    with pytest.raises(RevertError, match="NoWithdrawalRequested"):
        pool.withdraw("LP1", _W(1))


def test_leverage_ratio_monotonicity(pool):
    pool.deposit("LP1", _W(100000))
    pool.move_pool_phase()

    ratios = []
    pool.buy_protection("BUYER1", purchase(_W(100000)), _W(5000))
    ratios.append(pool.calculate_leverage_ratio())
    pool.buy_protection("BUYER2", purchase(_W(20000), "LENDPOOL2", 2), _W(5000))
    ratios.append(pool.calculate_leverage_ratio())
    # More protection with the same capital never increases the leverage ratio
    assert ratios[0] > ratios[1]

    pool.move_pool_phase()
    ratios = [pool.calculate_leverage_ratio()]
    for _ in range(3):
        pool.deposit("LP2", _W(5000))
        ratios.append(pool.calculate_leverage_ratio())
    # More capital with the same protection never decreases it
    assert all(a < b for a, b in zip(ratios, ratios[1:]))

    with pytest.raises(RevertError, match="ProtectionPoolLeverageRatioTooHigh"):
        pool.deposit("LP2", _W(6000))


def test_update_params(pool):
    assert pool.params.version == 1
    assert pool.update_params(min_required_capital=_W(50000)) == 2
    assert pool.params.version == 2
    assert pool.params.min_required_capital == _W(50000)
    assert pool.params.curvature == _W("0.05")

    with pool.as_("LP1"), pytest.raises(RevertError, match="Ownable: caller is not the owner"):
        pool.update_params(curvature=_W("0.1"))
    with pytest.raises(RevertError, match="InvalidProtectionPoolParams"):
        pool.update_params(leverage_ratio_floor=_W(2))
    with pytest.raises(RevertError, match="UnknownProtectionPoolParam"):
        pool.update_params(foo=1)
    assert pool.params.version == 2

    pool.deposit("LP1", _W(50000))
    assert pool.move_pool_phase() == ProtectionPoolPhase.OPEN_TO_BUYERS


def test_only_default_state_manager(pool):
    with pytest.raises(RevertError, match="OnlyDefaultStateManager"):
        pool.lock_capital("LENDPOOL1")
    with pytest.raises(RevertError, match="OnlyDefaultStateManager"):
        pool.unlock_lending_pool("LENDPOOL1")


class ReentrantToken(ERC20Token):
    def transfer_from(self, spender, sender, recipient, amount):
        target = getattr(self, "_reenter", None)
        if target is not None:
            target.deposit(sender, amount)
        return super().transfer_from(spender, sender, recipient, amount)


def test_reentrancy_guard():
    token = ReentrantToken(owner="owner", name="Evil", symbol="EVL", initial_supply=_W(1000))
    pool = ProtectionPool(
        name="sTK",
        symbol="sTK",
        currency=token,
        reference_lending_pools="RLP",
        cycle_manager="CM",
        default_state_manager="DSM",
    )
    token.transfer("owner", "LP1", _W(100))
    token.approve("LP1", pool.contract_id, MAX_UINT)

    token._reenter = pool
    with pytest.raises(RevertError, match="ReentrancyGuard: reentrant call"):
        pool.deposit("LP1", _W(10))
    assert pool.balance_of("LP1") == Wad(0)
    assert token.balance_of("LP1") == _W(100)

    token._reenter = None
    pool.deposit("LP1", _W(10))
    assert pool.balance_of("LP1") == _W(10)
