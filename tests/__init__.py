from io import StringIO

from ethproto.wadray import Wad

from cdspool.utils import load_config

MAX_UINT = Wad(2**256 - 1)

MARKET_SETUP = """
module: cdspool.protocol
currency:
  name: USD Coin
  symbol: USDC
  initial_supply: 10000000
  initial_balances:
  - user: LP1
    amount: 200000
  - user: LP2
    amount: 200000
  - user: LP3
    amount: 200000
  - user: BUYER1
    amount: 20000
  - user: BUYER2
    amount: 20000
lending_protocol:
  name: goldfinch
  lending_pools:
  - name: LENDPOOL1
    term: 365d
    payment_period: 30d
    interest_apr: "0.17"
    positions:
    - owner: BUYER1
      id: 1
      principal: 100000
  - name: LENDPOOL2
    term: 365d
    payment_period: 30d
    interest_apr: "0.15"
    positions:
    - owner: BUYER2
      id: 2
      principal: 250000
reference_lending_pools:
  late_payment_grace_period_in_days: 7
  lending_pools:
  - name: LENDPOOL1
    purchase_limit_in_days: 90
  - name: LENDPOOL2
    purchase_limit_in_days: 90
default_state_manager:
  payments_to_unlock: 2
  missed_payments_to_default: 3
protection_pools:
- name: sToken11
  open_cycle_duration: 10d
  cycle_duration: 30d
  params:
    leverage_ratio_floor: "0.5"
    leverage_ratio_ceiling: "1"
    leverage_ratio_buffer: "0.05"
    min_required_capital: 100000
    min_required_protection: 100000
    curvature: "0.05"
    min_risk_premium_percent: "0.02"
    underlying_risk_premium_percent: "0.1"
    min_protection_duration_in_seconds: 10d
    protection_renewal_grace_period_in_seconds: 14d
"""


def build_market(yaml_setup=MARKET_SETUP):
    """Builds the market and approves the pool to pull funds from every user"""
    market = load_config(StringIO(yaml_setup))
    for pool in market.pools.values():
        for user in ("LP1", "LP2", "LP3", "BUYER1", "BUYER2"):
            market.currency.approve(user, pool.contract_id, MAX_UINT)
    return market
