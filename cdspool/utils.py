import importlib
import logging
import re
import time
from collections import namedtuple
from functools import wraps

import yaml
from environs import Env
from ethproto.contracts import require
from ethproto.wadray import _W, Wad, make_integer_float
from m9g import Model
from m9g.fields import DictField, IntField, StringField

env = Env()

DAYS_IN_YEAR = 365

HOUR = 3600
DAY = 24 * HOUR
WEEK = 7 * DAY
MONTH = 30 * DAY
YEAR = DAYS_IN_YEAR * DAY


class TimeControl:
    def __init__(self, start_time=None):
        if start_time is None:
            self._now = int(time.time())
        else:
            self._now = start_time

    @property
    def now(self):
        return self._now

    def fast_forward(self, seconds):
        self._now += seconds
        return self._now


time_control = TimeControl()


class BoolField(IntField):
    FIELD_TYPE = bool

    def adapt(self, value):
        return bool(value)


class Event(Model):
    name = StringField()
    args = DictField(StringField(), StringField(), default={})
    timestamp = IntField()

    def __str__(self):
        return "{}({})".format(self.name, ", ".join(f"{k}={v}" for k, v in self.args.items()))


class EventsMixin:
    """Keeps emitted events in the ``events`` field, so they are reverted with the transaction"""

    def _emit(self, name, **args):
        event = Event(name=name, args=dict((k, str(v)) for k, v in args.items()), timestamp=time_control.now)
        self.events.append(event)
        logging.getLogger(self.__class__.__module__).info("%s %s", self.contract_id, event)
        return event

    def events_named(self, name):
        return [event for event in self.events if event.name == name]


def only_owner(method):
    @wraps(method)
    def inner(self, *args, **kwargs):
        require(self._running_as == self.owner, "Ownable: caller is not the owner")
        return method(self, *args, **kwargs)

    return inner


def parse_period(period):
    if isinstance(period, int):
        return period
    if period.isdigit():
        return int(period)
    else:
        count = int(period[:-1])
        multiplier = {
            "h": HOUR,
            "d": DAY,
            "w": WEEK,
            "m": MONTH,
            "y": YEAR,
        }[period[-1]]
        return count * multiplier


envvar_matcher = re.compile(r"\$\{([A-Za-z0-9_]+)(:-[^\}]*)?\}")


def envvar_constructor(loader, node):
    """
    Extract the matched value, expand env variable, and replace the match
    ${REQUIRED_ENV_VARIABLE} or ${ENV_VARIABLE:-default}
    """
    global env
    value = node.value
    match = envvar_matcher.match(value)
    env_var = match.group(1)
    default_value = match.group(2)
    if default_value is not None:
        return env.str(env_var, default_value[2:]) + value[match.end() :]
    else:
        return env.str(env_var) + value[match.end() :]


yaml.add_implicit_resolver("!envvar", envvar_matcher, Loader=yaml.FullLoader)
yaml.add_constructor("!envvar", envvar_constructor, Loader=yaml.FullLoader)


Market = namedtuple(
    "Market",
    "currency adapter reference_lending_pools default_state_manager cycle_manager pools",
)

POOL_PARAMS_WAD = (
    "leverage_ratio_floor",
    "leverage_ratio_ceiling",
    "leverage_ratio_buffer",
    "curvature",
    "min_risk_premium_percent",
    "underlying_risk_premium_percent",
)
POOL_PARAMS_AMOUNT = ("min_required_capital", "min_required_protection")
POOL_PARAMS_PERIOD = ("min_protection_duration_in_seconds", "protection_renewal_grace_period_in_seconds")


def load_config(yaml_config=None, module=None):
    """Loads the configuration and builds the whole market

    @params yaml_config must be a file-like object or None
    """
    if yaml_config is None:
        with open(env.path("SETUP_FILE")) as setup_file:
            config = yaml.load(setup_file, Loader=yaml.FullLoader)
    else:
        config = yaml.load(yaml_config, Loader=yaml.FullLoader)

    if module is None:
        module = importlib.import_module(config.get("module", "cdspool.protocol"))

    currency_params = dict(config.get("currency", {}))
    if currency_params.get("decimals", 18) == 18:
        to_wad = _W
    else:

        def to_wad(x):
            return Wad(make_integer_float(currency_params["decimals"]).from_value(x))

    currency_params["owner"] = currency_params.get("owner", "owner")
    if "initial_supply" in currency_params:
        currency_params["initial_supply"] = to_wad(currency_params["initial_supply"])
    initial_balances = currency_params.pop("initial_balances", [])
    currency = module.ERC20Token(**currency_params)
    for balance in initial_balances:
        currency.transfer(currency.owner, balance["user"], to_wad(balance["amount"]))

    adapter_params = dict(config.get("lending_protocol", {}))
    adapter_params.setdefault("name", "goldfinch")
    lending_pools = adapter_params.pop("lending_pools", [])
    adapter = module.LendingProtocolAdapter(**adapter_params)
    for lp_dict in lending_pools:
        lp_dict = dict(lp_dict)
        positions = lp_dict.pop("positions", [])
        lending_pool = lp_dict.pop("name")
        adapter.create_lending_pool(
            lending_pool,
            term_in_seconds=parse_period(lp_dict.pop("term", "365d")),
            payment_period_in_seconds=parse_period(lp_dict.pop("payment_period", "30d")),
            interest_apr=_W(lp_dict.pop("interest_apr", "0.17")),
            **lp_dict,
        )
        for position in positions:
            adapter.open_position(
                lending_pool, position["owner"], position["id"], to_wad(position["principal"])
            )

    rlp_params = dict(config.get("reference_lending_pools", {}))
    added_pools = rlp_params.pop("lending_pools", [])
    rlp = module.ReferenceLendingPools(**rlp_params)
    rlp.add_lending_protocol_adapter(adapter.name, adapter)
    for added in added_pools:
        rlp.add_reference_lending_pool(
            added["name"], added.get("protocol", adapter.name), added.get("purchase_limit_in_days", 90)
        )

    dsm_params = dict(config.get("default_state_manager", {}))
    dsm = module.DefaultStateManager(**dsm_params)

    cycle_params = dict(config.get("cycle_manager", {}))
    cycle_manager = module.ProtectionPoolCycleManager(**cycle_params)

    pools = {}
    for pool_dict in config.get("protection_pools", []):
        pool_dict = dict(pool_dict)
        open_cycle_duration = parse_period(pool_dict.pop("open_cycle_duration", "10d"))
        cycle_duration = parse_period(pool_dict.pop("cycle_duration", "30d"))
        params_dict = pool_dict.pop("params", {})
        params = {}
        for key, value in params_dict.items():
            if key in POOL_PARAMS_WAD:
                params[key] = _W(value)
            elif key in POOL_PARAMS_AMOUNT:
                params[key] = to_wad(value)
            elif key in POOL_PARAMS_PERIOD:
                params[key] = parse_period(value)
            else:
                raise ValueError(f"Unknown protection pool param {key}")
        pool_dict.setdefault("symbol", pool_dict["name"])
        pool = module.ProtectionPool(
            currency=currency,
            reference_lending_pools=rlp,
            cycle_manager=cycle_manager,
            default_state_manager=dsm,
            params=module.ProtectionPoolParams(**params),
            **pool_dict,
        )
        cycle_manager.register_pool(pool, open_cycle_duration, cycle_duration)
        dsm.register_protection_pool(pool)
        pools[pool.name] = pool

    return Market(currency, adapter, rlp, dsm, cycle_manager, pools)
