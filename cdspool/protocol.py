import logging
from functools import wraps

from ethproto.contracts import (
    AccessControlContract,
    AddressField,
    ContractProxyField,
    ERC20Token,
    RevertCustomError,
    WadField,
    external,
    require,
    view,
)
from ethproto.wadray import _W, Wad
from m9g import Model
from m9g.fields import CompositeField, DictField, IntField, ListField, StringField, TupleField

from .lending import (  # noqa: F401
    LendingPoolStatus,
    LendingProtocolAdapter,
    ReferenceLendingPools,
)
from .premium import calculate_accrued_premium, calculate_k_and_lambda, calculate_premium
from .utils import DAY, BoolField, Event, EventsMixin, only_owner, time_control

logger = logging.getLogger(__name__)

LATE_STATUSES = (
    LendingPoolStatus.LATE_WITHIN_GRACE_PERIOD,
    LendingPoolStatus.LATE,
    LendingPoolStatus.UNDER_REVIEW,
)
LOCKED_STATUSES = (LendingPoolStatus.LATE, LendingPoolStatus.UNDER_REVIEW)
TERMINAL_STATUSES = (LendingPoolStatus.DEFAULTED, LendingPoolStatus.EXPIRED)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def nonreentrant(method):
    @wraps(method)
    def guarded(self, *args, **kwargs):
        require(not getattr(self, "_entered", False), "ReentrancyGuard: reentrant call")
        self._entered = True
        try:
            return method(self, *args, **kwargs)
        finally:
            self._entered = False

    return guarded


class BalanceSnapshot(Model):
    balances = DictField(AddressField(), WadField(), default={})
    total_supply = WadField(default=Wad(0))


class SToken(ERC20Token):
    """ERC20 share token that can take point-in-time snapshots of the balances"""

    snapshots = ListField(CompositeField(BalanceSnapshot), default=[])

    def _snapshot(self):
        self.snapshots.append(BalanceSnapshot(balances=dict(self.balances), total_supply=self.total_supply()))
        return len(self.snapshots)

    def _get_snapshot(self, snapshot_id):
        require(
            snapshot_id > 0 and snapshot_id <= len(self.snapshots),
            self._error("InvalidSnapshotId", snapshot_id),
        )
        return self.snapshots[snapshot_id - 1]

    @view
    def get_current_snapshot_id(self):
        return len(self.snapshots)

    @view
    def balance_of_at(self, account, snapshot_id):
        return self._get_snapshot(snapshot_id).balances.get(account, Wad(0))

    @view
    def total_supply_at(self, snapshot_id):
        return self._get_snapshot(snapshot_id).total_supply

    def _before_token_transfer(self, sender, recipient, amount):
        pass

    def _transfer(self, sender, recipient, amount):
        self._before_token_transfer(sender, recipient, amount)
        return super()._transfer(sender, recipient, amount)


class CycleState:
    NONE = "None"
    OPEN = "Open"
    LOCKED = "Locked"


class ProtectionPoolCycle(Model):
    open_cycle_duration = IntField()
    cycle_duration = IntField()
    current_cycle_index = IntField(default=0)
    current_cycle_start_time = IntField()
    current_cycle_state = StringField(default=CycleState.NONE)


class ProtectionPoolCycleManager(EventsMixin, AccessControlContract):
    """Tracks the withdrawal cycles of each protection pool. Each cycle starts open for a window
    (withdrawals allowed) and then stays locked until the cycle ends."""

    pool_cycles = DictField(AddressField(), CompositeField(ProtectionPoolCycle), default={})
    events = ListField(CompositeField(Event), default=[])

    @external
    @only_owner
    def register_pool(self, pool, open_cycle_duration, cycle_duration):
        pool = ContractProxyField().adapt(pool)
        require(pool not in self.pool_cycles, self._error("ProtectionPoolAlreadyRegistered", pool))
        require(
            open_cycle_duration <= cycle_duration,
            self._error("InvalidCycleDuration", open_cycle_duration, cycle_duration),
        )
        self.pool_cycles[pool] = ProtectionPoolCycle(
            open_cycle_duration=open_cycle_duration,
            cycle_duration=cycle_duration,
            current_cycle_index=0,
            current_cycle_start_time=time_control.now,
            current_cycle_state=CycleState.OPEN,
        )
        self._emit("ProtectionPoolCycleCreated", pool=pool, cycle_index=0, start=time_control.now)

    @external
    def calculate_and_set_pool_cycle_state(self, pool):
        cycle = self.pool_cycles.get(ContractProxyField().adapt(pool), None)
        if cycle is None:
            return CycleState.NONE

        now = time_control.now
        elapsed = now - cycle.current_cycle_start_time
        if elapsed > cycle.cycle_duration:
            # Catch up every whole cycle elapsed, keeping the cycles aligned with the first one
            elapsed_cycles = elapsed // cycle.cycle_duration
            cycle.current_cycle_index += elapsed_cycles
            cycle.current_cycle_start_time += elapsed_cycles * cycle.cycle_duration
            elapsed = now - cycle.current_cycle_start_time
            self._emit(
                "ProtectionPoolCycleCreated",
                pool=pool,
                cycle_index=cycle.current_cycle_index,
                start=cycle.current_cycle_start_time,
            )

        if elapsed <= cycle.open_cycle_duration:
            cycle.current_cycle_state = CycleState.OPEN
        else:
            cycle.current_cycle_state = CycleState.LOCKED
        return cycle.current_cycle_state

    def _get_cycle(self, pool):
        cycle = self.pool_cycles.get(ContractProxyField().adapt(pool), None)
        require(cycle is not None, self._error("ProtectionPoolNotRegistered", pool))
        return cycle

    @view
    def get_current_cycle_state(self, pool):
        cycle = self.pool_cycles.get(ContractProxyField().adapt(pool), None)
        return CycleState.NONE if cycle is None else cycle.current_cycle_state

    @view
    def get_current_cycle_index(self, pool):
        return self._get_cycle(pool).current_cycle_index

    @view
    def get_current_pool_cycle(self, pool):
        return self._get_cycle(pool)

    @view
    def get_next_cycle_end_timestamp(self, pool):
        cycle = self._get_cycle(pool)
        return cycle.current_cycle_start_time + 2 * cycle.cycle_duration


class ProtectionPoolPhase:
    OPEN_TO_SELLERS = "OpenToSellers"
    OPEN_TO_BUYERS = "OpenToBuyers"
    OPEN = "Open"


class ProtectionPoolParams(Model):
    PARAM_NAMES = (
        "leverage_ratio_floor",
        "leverage_ratio_ceiling",
        "leverage_ratio_buffer",
        "min_required_capital",
        "min_required_protection",
        "curvature",
        "min_risk_premium_percent",
        "underlying_risk_premium_percent",
        "min_protection_duration_in_seconds",
        "protection_renewal_grace_period_in_seconds",
    )

    version = IntField(default=1)
    leverage_ratio_floor = WadField(default=_W("0.5"))
    leverage_ratio_ceiling = WadField(default=_W(1))
    leverage_ratio_buffer = WadField(default=_W("0.05"))
    min_required_capital = WadField(default=_W(100000))
    min_required_protection = WadField(default=_W(200000))
    curvature = WadField(default=_W("0.05"))
    min_risk_premium_percent = WadField(default=_W("0.02"))
    underlying_risk_premium_percent = WadField(default=_W("0.1"))
    min_protection_duration_in_seconds = IntField(default=10 * DAY)
    protection_renewal_grace_period_in_seconds = IntField(default=14 * DAY)

    def validate(self):
        def check(condition, reason):
            require(condition, RevertCustomError("InvalidProtectionPoolParams", reason))

        check(self.leverage_ratio_buffer > 0, "leverage_ratio_buffer must be > 0")
        check(
            self.leverage_ratio_floor >= self.leverage_ratio_buffer,
            "leverage_ratio_floor must be >= leverage_ratio_buffer",
        )
        check(
            self.leverage_ratio_floor < self.leverage_ratio_ceiling,
            "leverage_ratio_floor must be < leverage_ratio_ceiling",
        )
        check(self.curvature > 0, "curvature must be > 0")
        check(
            self.min_risk_premium_percent > 0 and self.min_risk_premium_percent < _W(1),
            "min_risk_premium_percent must be in (0, 1)",
        )
        check(
            self.underlying_risk_premium_percent >= 0 and self.underlying_risk_premium_percent <= _W(1),
            "underlying_risk_premium_percent must be in [0, 1]",
        )
        check(self.min_protection_duration_in_seconds > 0, "min_protection_duration_in_seconds must be > 0")
        check(
            self.protection_renewal_grace_period_in_seconds >= 0,
            "protection_renewal_grace_period_in_seconds must be >= 0",
        )

    def replace(self, **changes):
        values = dict((name, getattr(self, name)) for name in self.PARAM_NAMES)
        for name, value in changes.items():
            require(name in self.PARAM_NAMES, RevertCustomError("UnknownProtectionPoolParam", name))
            values[name] = value
        return ProtectionPoolParams(version=self.version + 1, **values)


class ProtectionPurchaseParams(Model):
    lending_pool = AddressField()
    position_id = IntField()
    protection_amount = WadField()
    protection_duration_in_seconds = IntField()


class ProtectionInfo(Model):
    buyer = AddressField()
    protection_premium = WadField(default=Wad(0))
    start_timestamp = IntField(default=0)
    k = WadField(default=Wad(0))
    lambda_ = WadField(default=Wad(0))
    is_minimum_premium = BoolField(default=False)
    purchase_params = CompositeField(ProtectionPurchaseParams)
    expired = BoolField(default=False)

    @property
    def expiration(self):
        return self.start_timestamp + self.purchase_params.protection_duration_in_seconds

    @property
    def position_key(self):
        return (self.purchase_params.lending_pool, self.purchase_params.position_id)


class ProtectionBuyerAccount(Model):
    active_protection_indexes = ListField(IntField(), default=[])
    lending_pool_to_premium = DictField(AddressField(), WadField(), default={})
    # (lending_pool, position_id) -> index of the last expired protection
    expired_protection_indexes = DictField(TupleField((AddressField(), IntField())), IntField(), default={})


class LendingPoolDetail(Model):
    protocol = StringField()
    added_timestamp = IntField()
    protection_purchase_limit_timestamp = IntField()
    last_premium_accrual_timestamp = IntField(default=0)
    total_premium = WadField(default=Wad(0))
    total_protection = WadField(default=Wad(0))
    locked = BoolField(default=False)
    active_protection_indexes = ListField(IntField(), default=[])


class WithdrawalCycleDetail(Model):
    total_stoken_requested = WadField(default=Wad(0))
    withdrawal_requests = DictField(AddressField(), WadField(), default={})


class ProtectionPool(EventsMixin, SToken):
    """Pool where sellers deposit capital (receiving sTokens) and buyers purchase protection for their
    positions in the reference lending pools.

    Premium paid by the buyers is accrued into the capital backing the sTokens following the
    (K, lambda) curve computed at purchase time.
    """

    currency = ContractProxyField()
    reference_lending_pools = ContractProxyField()
    cycle_manager = ContractProxyField()
    default_state_manager = ContractProxyField()
    params = CompositeField(ProtectionPoolParams)
    phase = StringField(default=ProtectionPoolPhase.OPEN_TO_SELLERS)

    total_stoken_underlying = WadField(default=Wad(0))
    total_premium = WadField(default=Wad(0))
    total_premium_accrued = WadField(default=Wad(0))
    total_protection = WadField(default=Wad(0))

    lending_pool_details = DictField(AddressField(), CompositeField(LendingPoolDetail), default={})
    protections = ListField(CompositeField(ProtectionInfo), default=[])
    buyer_accounts = DictField(AddressField(), CompositeField(ProtectionBuyerAccount), default={})
    withdrawal_cycles = DictField(IntField(), CompositeField(WithdrawalCycleDetail), default={})
    events = ListField(CompositeField(Event), default=[])

    def __init__(self, **kwargs):
        if "params" not in kwargs:
            kwargs["params"] = ProtectionPoolParams()
        super().__init__(**kwargs)
        self.params.validate()
        if not self.protections:
            # Index 0 is never a valid protection
            self.protections.append(
                ProtectionInfo(
                    buyer=ZERO_ADDRESS,
                    expired=True,
                    purchase_params=ProtectionPurchaseParams(
                        lending_pool=ZERO_ADDRESS,
                        position_id=0,
                        protection_amount=Wad(0),
                        protection_duration_in_seconds=0,
                    ),
                )
            )
        self._emit("ProtectionPoolInitialized", pool_name=self.name, currency=self.currency)

    def _only_default_state_manager(self):
        require(
            self._running_as == self.default_state_manager,
            self._error("OnlyDefaultStateManager", self._running_as),
        )

    def _transfer_to(self, target, amount):
        require(target is not None, "ProtectionPool: transfer to the zero address")
        if amount == Wad(0):
            return
        return self.currency.transfer(self.contract_id, target, amount)

    def _current_cycle_index(self):
        return self.cycle_manager.get_current_cycle_index(self.contract_id)

    # Configuration

    @external
    @only_owner
    def update_params(self, **changes):
        new_params = self.params.replace(**changes)
        new_params.validate()
        self.params = new_params
        self._emit("ProtectionPoolParamsUpdated", version=new_params.version, **changes)
        return new_params.version

    @external
    @only_owner
    def move_pool_phase(self):
        if self.phase == ProtectionPoolPhase.OPEN_TO_SELLERS:
            require(
                self.total_stoken_underlying >= self.params.min_required_capital,
                self._error(
                    "ProtectionPoolHasNotEnoughCapital", self.total_stoken_underlying, self.params.min_required_capital
                ),
            )
            self.phase = ProtectionPoolPhase.OPEN_TO_BUYERS
        elif self.phase == ProtectionPoolPhase.OPEN_TO_BUYERS:
            leverage_ratio = self.calculate_leverage_ratio()
            require(
                leverage_ratio <= self.params.leverage_ratio_ceiling,
                self._error("ProtectionPoolLeverageRatioTooHigh", leverage_ratio),
            )
            self.phase = ProtectionPoolPhase.OPEN
        else:
            return self.phase
        self._emit("ProtectionPoolPhaseUpdated", phase=self.phase)
        return self.phase

    # Capital

    @view
    def calculate_leverage_ratio(self):
        if self.total_protection == 0:
            return Wad(0)
        return self.total_stoken_underlying // self.total_protection

    @view
    def convert_to_stoken(self, amount):
        total_supply = self.total_supply()
        if total_supply == 0:
            return amount
        require(self.total_stoken_underlying > 0, self._error("ZeroExchangeRate"))
        return amount * total_supply // self.total_stoken_underlying

    @view
    def convert_to_underlying(self, stoken_amount):
        total_supply = self.total_supply()
        if total_supply == 0:
            return Wad(0)
        return stoken_amount * self.total_stoken_underlying // total_supply

    @external
    @nonreentrant
    def deposit(self, provider, amount, receiver=None):
        require(
            self.phase != ProtectionPoolPhase.OPEN_TO_BUYERS,
            self._error("ProtectionPoolInOpenToBuyersPhase"),
        )
        require(amount > 0, self._error("ZeroDepositAmount"))
        receiver = receiver or provider

        stoken_amount = self.convert_to_stoken(amount)
        self.mint(receiver, stoken_amount)
        self.total_stoken_underlying += amount

        if self.total_stoken_underlying >= self.params.min_required_capital:
            leverage_ratio = self.calculate_leverage_ratio()
            require(
                leverage_ratio <= self.params.leverage_ratio_ceiling,
                self._error("ProtectionPoolLeverageRatioTooHigh", leverage_ratio),
            )

        self.currency.transfer_from(self.contract_id, provider, self.contract_id, amount)
        self._emit("ProtectionSold", provider=provider, receiver=receiver, amount=amount, stoken_amount=stoken_amount)
        return stoken_amount

    # Protection purchase

    def _get_lending_pool_detail(self, lending_pool):
        detail = self.lending_pool_details.get(lending_pool, None)
        if detail is None:
            info = self.reference_lending_pools.get_reference_lending_pool_info(lending_pool)
            detail = LendingPoolDetail(
                protocol=info.protocol,
                added_timestamp=info.added_timestamp,
                protection_purchase_limit_timestamp=info.protection_purchase_limit_timestamp,
            )
            self.lending_pool_details[lending_pool] = detail
        return detail

    def _has_active_protection(self, buyer, purchase_params):
        account = self.buyer_accounts.get(buyer, None)
        if account is None:
            return False
        key = (purchase_params.lending_pool, purchase_params.position_id)
        return any(self.protections[index].position_key == key for index in account.active_protection_indexes)

    def _verify_protection_purchase(self, buyer, purchase_params, is_renewal):
        require(
            self.phase != ProtectionPoolPhase.OPEN_TO_SELLERS,
            self._error("ProtectionPoolInOpenToSellersPhase"),
        )
        lending_pool = purchase_params.lending_pool
        duration = purchase_params.protection_duration_in_seconds
        require(purchase_params.protection_amount > 0, self._error("ZeroProtectionAmount"))
        require(
            duration >= self.params.min_protection_duration_in_seconds,
            self._error("ProtectionDurationTooShort", duration),
        )
        self.cycle_manager.calculate_and_set_pool_cycle_state(self.contract_id)
        require(
            time_control.now + duration <= self.cycle_manager.get_next_cycle_end_timestamp(self.contract_id),
            self._error("ProtectionDurationTooLong", duration),
        )

        status = self.default_state_manager.get_lending_pool_status(self.contract_id, lending_pool)
        require(status != LendingPoolStatus.NOT_SUPPORTED, self._error("LendingPoolNotSupported", lending_pool))
        require(status not in LATE_STATUSES, self._error("LendingPoolHasLatePayment", lending_pool))
        require(status != LendingPoolStatus.EXPIRED, self._error("LendingPoolExpired", lending_pool))
        require(status != LendingPoolStatus.DEFAULTED, self._error("LendingPoolDefaulted", lending_pool))

        require(
            self.reference_lending_pools.can_buy_protection(
                buyer, purchase_params, is_renewal or self._has_active_protection(buyer, purchase_params)
            ),
            self._error("ProtectionPurchaseNotAllowed", buyer, lending_pool, purchase_params.position_id),
        )

    def _create_protection(self, buyer, purchase_params, max_premium, is_renewal):
        self._verify_protection_purchase(buyer, purchase_params, is_renewal)

        lending_pool = purchase_params.lending_pool
        amount = purchase_params.protection_amount
        duration = purchase_params.protection_duration_in_seconds
        detail = self._get_lending_pool_detail(lending_pool)

        self.total_protection += amount
        detail.total_protection += amount
        leverage_ratio = self.calculate_leverage_ratio()
        require(
            leverage_ratio >= self.params.leverage_ratio_floor,
            self._error("ProtectionPoolLeverageRatioTooLow", leverage_ratio),
        )

        premium_amount, is_minimum_premium = calculate_premium(
            duration,
            amount,
            self.reference_lending_pools.calculate_protection_buyer_apr(lending_pool),
            leverage_ratio,
            self.total_stoken_underlying,
            self.total_protection,
            self.params,
        )
        require(
            premium_amount <= max_premium,
            self._error("PremiumExceedsMaxPremiumAmount", premium_amount, max_premium),
        )
        k, lambda_ = calculate_k_and_lambda(
            premium_amount,
            duration,
            leverage_ratio,
            self.params.leverage_ratio_floor,
            self.params.leverage_ratio_ceiling,
            self.params.leverage_ratio_buffer,
            self.params.curvature,
            self.params.min_risk_premium_percent if is_minimum_premium else None,
        )

        self.total_premium += premium_amount
        detail.total_premium += premium_amount

        index = len(self.protections)
        self.protections.append(
            ProtectionInfo(
                buyer=buyer,
                protection_premium=premium_amount,
                start_timestamp=time_control.now,
                k=k,
                lambda_=lambda_,
                is_minimum_premium=is_minimum_premium,
                purchase_params=purchase_params,
            )
        )
        detail.active_protection_indexes.append(index)

        account = self.buyer_accounts.get(buyer, None)
        if account is None:
            account = self.buyer_accounts[buyer] = ProtectionBuyerAccount()
        account.active_protection_indexes.append(index)
        account.lending_pool_to_premium[lending_pool] = (
            account.lending_pool_to_premium.get(lending_pool, Wad(0)) + premium_amount
        )

        self.currency.transfer_from(self.contract_id, buyer, self.contract_id, premium_amount)
        self._emit(
            "ProtectionRenewed" if is_renewal else "ProtectionBought",
            buyer=buyer,
            lending_pool=lending_pool,
            position_id=purchase_params.position_id,
            protection_amount=amount,
            premium=premium_amount,
            index=index,
        )
        return index

    @external
    @nonreentrant
    def buy_protection(self, buyer, purchase_params, max_premium):
        return self._create_protection(buyer, purchase_params, max_premium, False)

    @external
    @nonreentrant
    def renew_protection(self, buyer, purchase_params, max_premium):
        """Renews an expired protection on the same lending position, for an amount not higher than the
        expired one, while it's within the renewal grace period"""
        lending_pool = purchase_params.lending_pool
        self._accrue_premium_and_expire_protections([lending_pool])

        account = self.buyer_accounts.get(buyer, None)
        key = (lending_pool, purchase_params.position_id)
        expired_index = account.expired_protection_indexes.get(key, 0) if account is not None else 0
        require(
            expired_index != 0,
            self._error("NoExpiredProtectionToRenew", buyer, lending_pool, purchase_params.position_id),
        )
        expired = self.protections[expired_index]
        require(
            purchase_params.protection_amount <= expired.purchase_params.protection_amount,
            self._error(
                "CanNotRenewProtectionWithHigherRenewalAmount",
                purchase_params.protection_amount,
                expired.purchase_params.protection_amount,
            ),
        )
        require(
            time_control.now <= expired.expiration + self.params.protection_renewal_grace_period_in_seconds,
            self._error("CanNotRenewProtectionAfterGracePeriod", expired_index),
        )
        del account.expired_protection_indexes[key]
        return self._create_protection(buyer, purchase_params, max_premium, True)

    # Premium accrual

    def _expire_protection(self, detail, index):
        protection = self.protections[index]
        protection.expired = True
        amount = protection.purchase_params.protection_amount
        detail.total_protection -= amount
        if not detail.locked:
            # Locked lending pools had their protection removed from the total when locked
            self.total_protection -= amount

        account = self.buyer_accounts[protection.buyer]
        account.active_protection_indexes.remove(index)
        account.expired_protection_indexes[protection.position_key] = index
        self._emit(
            "ProtectionExpired",
            buyer=protection.buyer,
            lending_pool=protection.purchase_params.lending_pool,
            position_id=protection.purchase_params.position_id,
            protection_amount=amount,
            index=index,
        )

    def _accrue_premium_and_expire_protections(self, lending_pools):
        now = time_control.now
        total_accrued = Wad(0)
        for lending_pool in lending_pools:
            detail = self.lending_pool_details.get(lending_pool, None)
            if detail is None:
                continue
            defaulted = (
                self.default_state_manager.get_lending_pool_status(self.contract_id, lending_pool)
                == LendingPoolStatus.DEFAULTED
            )

            accrued = Wad(0)
            still_active = []
            for index in detail.active_protection_indexes:
                protection = self.protections[index]
                start = protection.start_timestamp
                expiration = protection.expiration
                from_second = max(detail.last_premium_accrual_timestamp, start) - start
                to_second = min(now, expiration) - start
                if to_second > from_second:
                    accrued += calculate_accrued_premium(from_second, to_second, protection.k, protection.lambda_)
                if now >= expiration or defaulted:
                    self._expire_protection(detail, index)
                else:
                    still_active.append(index)

            detail.active_protection_indexes = still_active
            detail.last_premium_accrual_timestamp = now
            if accrued > 0:
                total_accrued += accrued
                self._emit("PremiumAccrued", lending_pool=lending_pool, amount=accrued)

        self.total_premium_accrued += total_accrued
        self.total_stoken_underlying += total_accrued
        return total_accrued

    @external
    def accrue_premium_and_expire_protections(self, lending_pools=None):
        if not lending_pools:
            lending_pools = list(self.lending_pool_details.keys())
        return self._accrue_premium_and_expire_protections(lending_pools)

    # Default handling, called by the default state manager

    @external
    def lock_capital(self, lending_pool):
        """Locks the capital at risk for the lending pool. Returns (locked_amount, snapshot_id)"""
        self._only_default_state_manager()
        self._accrue_premium_and_expire_protections([lending_pool])
        detail = self._get_lending_pool_detail(lending_pool)

        at_risk = Wad(0)
        for index in detail.active_protection_indexes:
            protection = self.protections[index]
            remaining_principal = self.reference_lending_pools.calculate_remaining_principal(
                lending_pool, protection.buyer, protection.purchase_params.position_id
            )
            at_risk += min(protection.purchase_params.protection_amount, remaining_principal)

        snapshot_id = self._snapshot()
        locked_amount = min(at_risk, self.total_stoken_underlying)
        self.total_stoken_underlying -= locked_amount

        if not detail.locked:
            detail.locked = True
            self.total_protection -= detail.total_protection

        self._emit("LendingPoolLocked", lending_pool=lending_pool, amount=locked_amount, snapshot_id=snapshot_id)
        return locked_amount, snapshot_id

    @external
    def unlock_lending_pool(self, lending_pool):
        self._only_default_state_manager()
        detail = self._get_lending_pool_detail(lending_pool)
        if detail.locked:
            detail.locked = False
            self.total_protection += detail.total_protection
        self._emit("LendingPoolUnlocked", lending_pool=lending_pool)

    @external
    @nonreentrant
    def claim_unlocked_capital(self, seller, receiver=None):
        with self.default_state_manager.as_(self.contract_id):
            amount = self.default_state_manager.calculate_and_claim_unlocked_capital(seller)
        self._transfer_to(receiver or seller, amount)
        return amount

    # Withdrawals

    @external
    def request_withdrawal(self, seller, stoken_amount):
        balance = self.balance_of(seller)
        require(
            stoken_amount <= balance,
            self._error("InsufficientSTokenBalance", seller, balance),
        )
        self.cycle_manager.calculate_and_set_pool_cycle_state(self.contract_id)
        withdrawal_cycle_index = self._current_cycle_index() + 2

        cycle = self.withdrawal_cycles.get(withdrawal_cycle_index, None)
        if cycle is None:
            cycle = self.withdrawal_cycles[withdrawal_cycle_index] = WithdrawalCycleDetail()
        previous_request = cycle.withdrawal_requests.get(seller, Wad(0))
        cycle.withdrawal_requests[seller] = stoken_amount
        cycle.total_stoken_requested = cycle.total_stoken_requested - previous_request + stoken_amount

        self._emit(
            "WithdrawalRequested",
            seller=seller,
            amount=stoken_amount,
            withdrawal_cycle_index=withdrawal_cycle_index,
        )
        return withdrawal_cycle_index

    @external
    @nonreentrant
    def withdraw(self, seller, stoken_amount, receiver=None):
        cycle_state = self.cycle_manager.calculate_and_set_pool_cycle_state(self.contract_id)
        require(cycle_state == CycleState.OPEN, self._error("ProtectionPoolIsNotOpen"))

        cycle_index = self._current_cycle_index()
        cycle = self.withdrawal_cycles.get(cycle_index, None)
        requested = cycle.withdrawal_requests.get(seller, Wad(0)) if cycle is not None else Wad(0)
        require(requested > 0, self._error("NoWithdrawalRequested", seller, cycle_index))
        require(
            stoken_amount <= requested,
            self._error("WithdrawalHigherThanRequested", seller, requested),
        )

        underlying_amount = self.convert_to_underlying(stoken_amount)
        cycle.withdrawal_requests[seller] = requested - stoken_amount
        cycle.total_stoken_requested -= stoken_amount
        self.burn(seller, stoken_amount)
        self.total_stoken_underlying -= underlying_amount

        if self.total_protection > 0:
            leverage_ratio = self.calculate_leverage_ratio()
            require(
                leverage_ratio >= self.params.leverage_ratio_floor,
                self._error("ProtectionPoolLeverageRatioTooLow", leverage_ratio),
            )

        self._transfer_to(receiver or seller, underlying_amount)
        self._emit("WithdrawalMade", seller=seller, stoken_amount=stoken_amount, amount=underlying_amount)
        return underlying_amount

    def _before_token_transfer(self, sender, recipient, amount):
        """Caps the pending withdrawal requests of the sender to the balance left after the transfer"""
        balance_left = self.balance_of(sender) - amount
        if balance_left < 0 or self.cycle_manager.get_current_cycle_state(self.contract_id) == CycleState.NONE:
            return
        current = self._current_cycle_index()
        for cycle_index in range(current, current + 3):
            cycle = self.withdrawal_cycles.get(cycle_index, None)
            if cycle is None:
                continue
            requested = cycle.withdrawal_requests.get(sender, Wad(0))
            if requested > balance_left:
                cycle.withdrawal_requests[sender] = balance_left
                cycle.total_stoken_requested -= requested - balance_left

    # Views

    @view
    def get_pool_info(self):
        return {
            "phase": self.phase,
            "params_version": self.params.version,
            "total_stoken_underlying": self.total_stoken_underlying,
            "total_premium": self.total_premium,
            "total_premium_accrued": self.total_premium_accrued,
            "total_protection": self.total_protection,
            "leverage_ratio": self.calculate_leverage_ratio(),
        }

    @view
    def get_protection(self, index):
        require(index > 0 and index < len(self.protections), self._error("InvalidProtectionIndex", index))
        return self.protections[index]

    @view
    def get_all_protections(self, buyer=None):
        if buyer is None:
            return [p for p in self.protections[1:] if not p.expired]
        account = self.buyer_accounts.get(buyer, None)
        if account is None:
            return []
        return [self.protections[index] for index in account.active_protection_indexes]

    @view
    def get_lending_pool_detail(self, lending_pool):
        detail = self.lending_pool_details.get(lending_pool, None)
        require(detail is not None, self._error("LendingPoolNotSupported", lending_pool))
        return detail

    @view
    def get_premium_paid(self, buyer, lending_pool):
        account = self.buyer_accounts.get(buyer, None)
        if account is None:
            return Wad(0)
        return account.lending_pool_to_premium.get(lending_pool, Wad(0))

    @view
    def get_withdrawal_request(self, seller, cycle_index=None):
        if cycle_index is None:
            cycle_index = self._current_cycle_index()
        cycle = self.withdrawal_cycles.get(cycle_index, None)
        return cycle.withdrawal_requests.get(seller, Wad(0)) if cycle is not None else Wad(0)

    @view
    def get_total_requested_withdrawal(self, cycle_index=None):
        if cycle_index is None:
            cycle_index = self._current_cycle_index()
        cycle = self.withdrawal_cycles.get(cycle_index, None)
        return cycle.total_stoken_requested if cycle is not None else Wad(0)


class LockedCapital(Model):
    snapshot_id = IntField()
    amount = WadField()
    locked = BoolField(default=True)


class LendingPoolStateDetail(Model):
    status = StringField(default=LendingPoolStatus.NOT_SUPPORTED)
    late_timestamp = IntField(default=0)
    last_payment_timestamp = IntField(default=0)
    # Payments made to the lending pool when confirmations started counting
    payment_count = IntField(default=0)
    confirmed_payments = IntField(default=0)
    locked_capitals = ListField(CompositeField(LockedCapital), default=[])


class ProtectionPoolState(Model):
    updated_timestamp = IntField(default=0)
    lending_pool_states = DictField(AddressField(), CompositeField(LendingPoolStateDetail), default={})
    # (seller, lending_pool) -> count of locked capital instances already claimed
    claimed_counts = DictField(TupleField((AddressField(), AddressField())), IntField(), default={})


class DefaultStateManager(EventsMixin, AccessControlContract):
    """Tracks the status of every (protection pool, lending pool) pair, locking the capital of the
    protection pool when a lending pool goes late and releasing it once the payments resume.

    While locked, each new payment observed counts as a confirmation. The lending pool is considered
    under review after the first one and unlocked after ``payments_to_unlock`` confirmations. It
    defaults after ``missed_payments_to_default`` payment periods without payments.
    """

    protection_pools = ListField(ContractProxyField(), default=[])
    pool_states = DictField(AddressField(), CompositeField(ProtectionPoolState), default={})
    payments_to_unlock = IntField(default=2)
    missed_payments_to_default = IntField(default=3)
    events = ListField(CompositeField(Event), default=[])

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        require(self.payments_to_unlock > 0, self._error("InvalidPaymentsToUnlock", self.payments_to_unlock))
        require(
            self.missed_payments_to_default > 1,
            self._error("InvalidMissedPaymentsToDefault", self.missed_payments_to_default),
        )

    def _get_pool_state(self, pool):
        state = self.pool_states.get(ContractProxyField().adapt(pool), None)
        require(state is not None, self._error("ProtectionPoolNotRegistered", pool))
        return state

    @external
    @only_owner
    def register_protection_pool(self, pool):
        pool = ContractProxyField().adapt(pool)
        require(pool not in self.pool_states, self._error("ProtectionPoolAlreadyRegistered", pool))
        self.protection_pools.append(pool)
        self.pool_states[pool] = ProtectionPoolState()
        self._emit("ProtectionPoolRegistered", pool=pool)
        self._assess_state(pool)

    @external
    def assess_states(self):
        for pool in self.protection_pools:
            self._assess_state(pool)
        self._emit("ProtectionPoolStatesAssessed", pools=",".join(self.protection_pools))

    @external
    def assess_state_batch(self, pools):
        pools = [ContractProxyField().adapt(pool) for pool in pools]
        for pool in pools:
            self._get_pool_state(pool)
            self._assess_state(pool)
        self._emit("ProtectionPoolStatesAssessed", pools=",".join(pools))

    def _assess_state(self, pool):
        state = self.pool_states[pool]
        state.updated_timestamp = time_control.now
        rlp = pool.reference_lending_pools
        lending_pools, statuses = rlp.assess_state()
        for lending_pool, observed_status in zip(lending_pools, statuses):
            detail = state.lending_pool_states.get(lending_pool, None)
            if detail is None:
                detail = state.lending_pool_states[lending_pool] = LendingPoolStateDetail()
            previous_status = detail.status
            self._assess_lending_pool(pool, rlp, lending_pool, detail, observed_status)
            if detail.status != previous_status:
                self._emit(
                    "LendingPoolStatusUpdated",
                    pool=pool,
                    lending_pool=lending_pool,
                    previous_status=previous_status,
                    status=detail.status,
                )
            else:
                logger.debug("%s/%s status unchanged: %s", pool, lending_pool, detail.status)

    def _assess_lending_pool(self, pool, rlp, lending_pool, detail, observed_status):
        if detail.status in TERMINAL_STATUSES:
            return

        if detail.status not in LOCKED_STATUSES:
            if observed_status in (LendingPoolStatus.LATE, LendingPoolStatus.DEFAULTED):
                self._lock_capital(pool, rlp, lending_pool, detail)
            detail.status = observed_status
            return

        latest_payment_timestamp = rlp.get_latest_payment_timestamp(lending_pool)
        payment_count = rlp.get_payment_count(lending_pool)
        detail.confirmed_payments = payment_count - detail.payment_count
        detail.last_payment_timestamp = latest_payment_timestamp

        missed_payments = (time_control.now - latest_payment_timestamp) // rlp.get_payment_period_in_seconds(
            lending_pool
        )
        if observed_status == LendingPoolStatus.DEFAULTED or missed_payments >= self.missed_payments_to_default:
            detail.status = LendingPoolStatus.DEFAULTED
        elif observed_status == LendingPoolStatus.LATE:
            detail.status = LendingPoolStatus.LATE
            detail.payment_count = payment_count
            detail.confirmed_payments = 0
        elif (
            observed_status == LendingPoolStatus.ACTIVE and detail.confirmed_payments >= self.payments_to_unlock
        ) or (observed_status == LendingPoolStatus.EXPIRED and detail.confirmed_payments > 0):
            self._unlock_capital(pool, lending_pool, detail)
            detail.status = observed_status
        elif detail.confirmed_payments > 0:
            detail.status = LendingPoolStatus.UNDER_REVIEW

    def _lock_capital(self, pool, rlp, lending_pool, detail):
        with pool.as_(self.contract_id):
            amount, snapshot_id = pool.lock_capital(lending_pool)
        detail.locked_capitals.append(LockedCapital(snapshot_id=snapshot_id, amount=amount, locked=True))
        self._emit("LendingPoolLocked", pool=pool, lending_pool=lending_pool, amount=amount, snapshot_id=snapshot_id)
        detail.late_timestamp = time_control.now
        detail.last_payment_timestamp = rlp.get_latest_payment_timestamp(lending_pool)
        detail.payment_count = rlp.get_payment_count(lending_pool)
        detail.confirmed_payments = 0

    def _unlock_capital(self, pool, lending_pool, detail):
        with pool.as_(self.contract_id):
            pool.unlock_lending_pool(lending_pool)
        detail.locked_capitals[-1].locked = False
        detail.confirmed_payments = 0
        self._emit("LendingPoolUnlocked", pool=pool, lending_pool=lending_pool)

    def _calculate_claimable_unlocked_amount(self, pool, seller, claim):
        state = self._get_pool_state(pool)
        pool = ContractProxyField().adapt(pool)
        total = Wad(0)
        for lending_pool, detail in state.lending_pool_states.items():
            key = (seller, lending_pool)
            claimed = state.claimed_counts.get(key, 0)
            count = claimed
            while count < len(detail.locked_capitals) and not detail.locked_capitals[count].locked:
                locked_capital = detail.locked_capitals[count]
                total_supply = pool.total_supply_at(locked_capital.snapshot_id)
                if total_supply > 0:
                    balance = pool.balance_of_at(seller, locked_capital.snapshot_id)
                    total += balance * locked_capital.amount // total_supply
                count += 1
            if claim and count > claimed:
                state.claimed_counts[key] = count
        return total

    @view
    def calculate_claimable_unlocked_amount(self, pool, seller):
        return self._calculate_claimable_unlocked_amount(pool, seller, False)

    @external
    def calculate_and_claim_unlocked_capital(self, seller):
        pool = self._running_as
        require(pool in self.pool_states, self._error("ProtectionPoolNotRegistered", pool))
        amount = self._calculate_claimable_unlocked_amount(pool, seller, True)
        self._emit("LockedCapitalClaimed", pool=pool, seller=seller, amount=amount)
        return amount

    @view
    def get_lending_pool_status(self, pool, lending_pool):
        state = self.pool_states.get(ContractProxyField().adapt(pool), None)
        if state is None or lending_pool not in state.lending_pool_states:
            return LendingPoolStatus.NOT_SUPPORTED
        return state.lending_pool_states[lending_pool].status

    @view
    def get_locked_capitals(self, pool, lending_pool):
        state = self._get_pool_state(pool)
        detail = state.lending_pool_states.get(lending_pool, None)
        return list(detail.locked_capitals) if detail is not None else []

    @view
    def get_pool_state_update_timestamp(self, pool):
        state = self.pool_states.get(ContractProxyField().adapt(pool), None)
        return 0 if state is None else state.updated_timestamp
