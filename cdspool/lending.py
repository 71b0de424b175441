"""Reference lending pools and the lending protocols they live in"""
import logging

from ethproto.contracts import (
    AccessControlContract,
    AddressField,
    ContractProxy,
    ContractProxyField,
    WadField,
    external,
    require,
    view,
)
from ethproto.wadray import Wad
from m9g import Model
from m9g.fields import CompositeField, DictField, IntField, ListField, StringField, TupleField

from .utils import DAY, BoolField, Event, EventsMixin, only_owner, time_control

logger = logging.getLogger(__name__)


class LendingPoolStatus:
    NOT_SUPPORTED = "NotSupported"
    ACTIVE = "Active"
    LATE_WITHIN_GRACE_PERIOD = "LateWithinGracePeriod"
    LATE = "Late"
    UNDER_REVIEW = "UnderReview"
    DEFAULTED = "Defaulted"
    EXPIRED = "Expired"


class ExternalLendingPool(Model):
    term_end_timestamp = IntField()
    payment_period_in_seconds = IntField()
    last_payment_timestamp = IntField()
    payment_count = IntField(default=0)
    interest_apr = WadField()
    total_principal = WadField(default=Wad(0))
    balance = WadField(default=Wad(0))
    defaulted = BoolField(default=False)
    # position_id -> (owner, principal)
    positions = DictField(IntField(), TupleField((AddressField(), WadField())), default={})

    def is_expired(self):
        repaid = self.total_principal > 0 and self.balance == 0
        return repaid or time_control.now >= self.term_end_timestamp

    def is_late(self):
        return time_control.now > self.last_payment_timestamp + self.payment_period_in_seconds


class LendingProtocolAdapter(AccessControlContract):
    """Simulates an external lending protocol (borrowers, payments and lender positions)"""

    name = StringField(default="goldfinch")
    lending_pools = DictField(AddressField(), CompositeField(ExternalLendingPool), default={})

    def _get_pool(self, lending_pool):
        pool = self.lending_pools.get(lending_pool, None)
        require(pool is not None, self._error("LendingPoolNotFound", lending_pool))
        return pool

    @external
    def create_lending_pool(self, lending_pool, term_in_seconds, payment_period_in_seconds, interest_apr):
        require(lending_pool not in self.lending_pools, self._error("LendingPoolAlreadyExists", lending_pool))
        self.lending_pools[lending_pool] = ExternalLendingPool(
            term_end_timestamp=time_control.now + term_in_seconds,
            payment_period_in_seconds=payment_period_in_seconds,
            last_payment_timestamp=time_control.now,
            interest_apr=interest_apr,
        )

    @external
    def open_position(self, lending_pool, owner, position_id, principal):
        pool = self._get_pool(lending_pool)
        require(position_id not in pool.positions, self._error("PositionAlreadyExists", position_id))
        pool.positions[position_id] = (owner, principal)
        pool.total_principal += principal
        pool.balance += principal

    @external
    def make_payment(self, lending_pool, principal_repaid=None):
        """Registers a borrower payment. Paying principal reduces every lender position pro-rata"""
        pool = self._get_pool(lending_pool)
        pool.last_payment_timestamp = time_control.now
        pool.payment_count += 1
        if principal_repaid is not None:
            pool.balance = max(pool.balance - principal_repaid, Wad(0))

    @external
    def write_down(self, lending_pool):
        self._get_pool(lending_pool).defaulted = True

    @view
    def is_lending_pool_expired(self, lending_pool):
        return self._get_pool(lending_pool).is_expired()

    @view
    def is_lending_pool_defaulted(self, lending_pool):
        return self._get_pool(lending_pool).defaulted

    @view
    def is_lending_pool_late(self, lending_pool):
        return self._get_pool(lending_pool).is_late()

    @view
    def is_lending_pool_late_within_grace_period(self, lending_pool, grace_period_in_days):
        pool = self._get_pool(lending_pool)
        grace_end = pool.last_payment_timestamp + pool.payment_period_in_seconds + grace_period_in_days * DAY
        return pool.is_late() and time_control.now <= grace_end

    @view
    def get_latest_payment_timestamp(self, lending_pool):
        return self._get_pool(lending_pool).last_payment_timestamp

    @view
    def get_payment_period_in_seconds(self, lending_pool):
        return self._get_pool(lending_pool).payment_period_in_seconds

    @view
    def get_payment_count(self, lending_pool):
        return self._get_pool(lending_pool).payment_count

    @view
    def calculate_protection_buyer_apr(self, lending_pool):
        return self._get_pool(lending_pool).interest_apr

    @view
    def calculate_remaining_principal(self, lending_pool, lender, position_id):
        pool = self._get_pool(lending_pool)
        owner, principal = pool.positions.get(position_id, (None, Wad(0)))
        if owner != lender or pool.total_principal == 0:
            return Wad(0)
        return principal * pool.balance // pool.total_principal


class ReferenceLendingPoolInfo(Model):
    protocol = StringField()
    added_timestamp = IntField()
    protection_purchase_limit_timestamp = IntField()


class ReferenceLendingPools(EventsMixin, AccessControlContract):
    adapters = DictField(StringField(), ContractProxyField(), default={})
    reference_lending_pools = DictField(AddressField(), CompositeField(ReferenceLendingPoolInfo), default={})
    lending_pools = ListField(AddressField(), default=[])
    late_payment_grace_period_in_days = IntField(default=7)
    events = ListField(CompositeField(Event), default=[])

    def _adapter(self, lending_pool):
        return self.adapters[self.reference_lending_pools[lending_pool].protocol]

    def _require_supported(self, lending_pool):
        require(
            lending_pool in self.reference_lending_pools,
            self._error("ReferenceLendingPoolNotSupported", lending_pool),
        )

    @external
    @only_owner
    def add_lending_protocol_adapter(self, protocol, adapter):
        self.adapters[protocol] = ContractProxy(adapter.contract_id)

    @external
    @only_owner
    def add_reference_lending_pool(self, lending_pool, protocol, protection_purchase_limit_in_days):
        require(lending_pool, self._error("ReferenceLendingPoolIsZeroAddress"))
        require(
            lending_pool not in self.reference_lending_pools,
            self._error("ReferenceLendingPoolAlreadyAdded", lending_pool),
        )
        require(protocol in self.adapters, self._error("LendingProtocolNotSupported", protocol))

        now = time_control.now
        self.reference_lending_pools[lending_pool] = ReferenceLendingPoolInfo(
            protocol=protocol,
            added_timestamp=now,
            protection_purchase_limit_timestamp=now + protection_purchase_limit_in_days * DAY,
        )
        self.lending_pools.append(lending_pool)

        status = self._get_lending_pool_status(lending_pool)
        require(
            status == LendingPoolStatus.ACTIVE,
            self._error("ReferenceLendingPoolIsNotActive", lending_pool, status),
        )
        self._emit(
            "ReferenceLendingPoolAdded",
            lending_pool=lending_pool,
            protocol=protocol,
            protection_purchase_limit_in_days=protection_purchase_limit_in_days,
        )

    @view
    def get_lending_pools(self):
        return list(self.lending_pools)

    @view
    def get_reference_lending_pool_info(self, lending_pool):
        self._require_supported(lending_pool)
        return self.reference_lending_pools[lending_pool]

    def _get_lending_pool_status(self, lending_pool):
        if lending_pool not in self.reference_lending_pools:
            return LendingPoolStatus.NOT_SUPPORTED
        adapter = self._adapter(lending_pool)
        if adapter.is_lending_pool_expired(lending_pool):
            return LendingPoolStatus.EXPIRED
        if adapter.is_lending_pool_defaulted(lending_pool):
            return LendingPoolStatus.DEFAULTED
        if adapter.is_lending_pool_late_within_grace_period(lending_pool, self.late_payment_grace_period_in_days):
            return LendingPoolStatus.LATE_WITHIN_GRACE_PERIOD
        if adapter.is_lending_pool_late(lending_pool):
            return LendingPoolStatus.LATE
        return LendingPoolStatus.ACTIVE

    @view
    def get_lending_pool_status(self, lending_pool):
        return self._get_lending_pool_status(lending_pool)

    @view
    def assess_state(self):
        statuses = [self._get_lending_pool_status(lending_pool) for lending_pool in self.lending_pools]
        return list(self.lending_pools), statuses

    @view
    def get_latest_payment_timestamp(self, lending_pool):
        self._require_supported(lending_pool)
        return self._adapter(lending_pool).get_latest_payment_timestamp(lending_pool)

    @view
    def get_payment_period_in_seconds(self, lending_pool):
        self._require_supported(lending_pool)
        return self._adapter(lending_pool).get_payment_period_in_seconds(lending_pool)

    @view
    def get_payment_count(self, lending_pool):
        """Payments made to the lending pool since it was created"""
        self._require_supported(lending_pool)
        return self._adapter(lending_pool).get_payment_count(lending_pool)

    @view
    def calculate_protection_buyer_apr(self, lending_pool):
        self._require_supported(lending_pool)
        return self._adapter(lending_pool).calculate_protection_buyer_apr(lending_pool)

    @view
    def calculate_remaining_principal(self, lending_pool, lender, position_id):
        self._require_supported(lending_pool)
        return self._adapter(lending_pool).calculate_remaining_principal(lending_pool, lender, position_id)

    @view
    def can_buy_protection(self, buyer, purchase_params, is_renewal):
        """Past the purchase limit only renewals are allowed. The protection can't exceed the
        principal the buyer still has lent in the position"""
        lending_pool = purchase_params.lending_pool
        self._require_supported(lending_pool)
        info = self.reference_lending_pools[lending_pool]
        if time_control.now > info.protection_purchase_limit_timestamp and not is_renewal:
            logger.debug("Protection purchase limit reached for %s", lending_pool)
            return False
        remaining_principal = self._adapter(lending_pool).calculate_remaining_principal(
            lending_pool, buyer, purchase_params.position_id
        )
        return purchase_params.protection_amount <= remaining_principal
