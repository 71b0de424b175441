"""Pricing math for credit default protections.

All values are Wads. Exponentials and logarithms are evaluated with Decimal at
``PRECISION`` significant digits and floored back to Wad, so results are
deterministic.
"""
import logging
from decimal import ROUND_FLOOR, Decimal, localcontext

from ethproto.contracts import RevertCustomError, require
from ethproto.wadray import _W, Wad

from .utils import DAY

logger = logging.getLogger(__name__)

WAD = 10**18
PRECISION = 60
SCALED_DAYS_IN_YEAR = _W("365.24")
SECONDS_IN_YEAR = 31556736  # 365.24 days


def _decimal(value):
    return Decimal(int(value)) / Decimal(WAD)


def _to_wad(value):
    return Wad(int((value * WAD).to_integral_value(rounding=ROUND_FLOOR)))


def _exp_decay(rate, periods):
    """floor(e^(-rate * periods)) as Wad. ``periods`` is a Decimal"""
    with localcontext() as ctx:
        ctx.prec = PRECISION
        return _to_wad((-_decimal(rate) * periods).exp())


def _decay_factor(lambda_, seconds):
    with localcontext() as ctx:
        ctx.prec = PRECISION
        days = Decimal(seconds) / Decimal(DAY)
    return _exp_decay(lambda_, days)


def calculate_risk_factor(leverage_ratio, floor, ceiling, buffer, curvature):
    """Risk factor from the leverage ratio curve

    risk_factor = curvature * ((ceiling + buffer) - leverage_ratio) / (leverage_ratio - (floor - buffer))
    """
    require(
        leverage_ratio > floor - buffer,
        RevertCustomError("RiskFactorOutOfDomain", leverage_ratio),
    )
    numerator = curvature * ((ceiling + buffer) - leverage_ratio)
    denominator = leverage_ratio - (floor - buffer)
    return numerator // denominator


def calculate_risk_factor_using_min_premium(min_premium_rate, duration_in_seconds):
    """Risk factor that makes 1 - e^(-rf * years) equal to min_premium_rate"""
    require(
        min_premium_rate > 0 and min_premium_rate < _W(1),
        RevertCustomError("InvalidMinRiskPremiumPercent", min_premium_rate),
    )
    require(duration_in_seconds > 0, RevertCustomError("InvalidProtectionDuration", duration_in_seconds))
    with localcontext() as ctx:
        ctx.prec = PRECISION
        years = Decimal(duration_in_seconds) / Decimal(SECONDS_IN_YEAR)
        risk_factor = -(Decimal(1) - _decimal(min_premium_rate)).ln() / years
    return _to_wad(risk_factor)


def can_calculate_risk_factor(total_capital, total_protection, leverage_ratio, params):
    return (
        total_capital >= params.min_required_capital
        and total_protection >= params.min_required_protection
        and leverage_ratio >= params.leverage_ratio_floor
        and leverage_ratio <= params.leverage_ratio_ceiling
    )


def calculate_k_and_lambda(
    total_premium,
    duration_in_seconds,
    leverage_ratio,
    floor,
    ceiling,
    buffer,
    curvature,
    min_risk_premium_percent=None,
):
    """Returns (K, lambda) so that K * (1 - e^(-lambda * days)) distributes total_premium over the
    protection duration. lambda is a daily decay rate.

    When min_risk_premium_percent is given, the risk factor is the one implied by the minimum premium
    instead of the leverage ratio curve.
    """
    require(duration_in_seconds > 0, RevertCustomError("InvalidProtectionDuration", duration_in_seconds))
    if min_risk_premium_percent is not None:
        risk_factor = calculate_risk_factor_using_min_premium(min_risk_premium_percent, duration_in_seconds)
    else:
        risk_factor = calculate_risk_factor(leverage_ratio, floor, ceiling, buffer, curvature)

    lambda_ = risk_factor // SCALED_DAYS_IN_YEAR
    require(lambda_ > 0, RevertCustomError("InvalidDecayRate", lambda_))

    decay = _decay_factor(lambda_, duration_in_seconds)
    require(decay < WAD, RevertCustomError("InvalidDecayRate", lambda_))
    # K is rounded up so the floored cumulative accrual reaches total_premium at the end
    k = Wad(-(-int(total_premium) * WAD // (WAD - int(decay))))
    return k, lambda_


def cumulative_premium(seconds, k, lambda_):
    return k * (Wad(WAD) - _decay_factor(lambda_, seconds))


def calculate_accrued_premium(from_second, to_second, k, lambda_):
    """Premium accrued between two offsets (in seconds) from the protection start"""
    require(
        from_second >= 0 and from_second <= to_second,
        RevertCustomError("InvalidAccrualInterval", from_second, to_second),
    )
    if from_second == to_second:
        return Wad(0)
    return cumulative_premium(to_second, k, lambda_) - cumulative_premium(from_second, k, lambda_)


def calculate_premium(
    protection_duration_in_seconds,
    protection_amount,
    protection_buyer_apr,
    leverage_ratio,
    total_capital,
    total_protection,
    params,
):
    """Returns (premium, is_minimum_premium)"""
    with localcontext() as ctx:
        ctx.prec = PRECISION
        years_decimal = Decimal(protection_duration_in_seconds) / Decimal(SECONDS_IN_YEAR)
    years = _to_wad(years_decimal)

    risk_premium_rate = params.min_risk_premium_percent
    is_minimum_premium = True
    if can_calculate_risk_factor(total_capital, total_protection, leverage_ratio, params):
        risk_factor = calculate_risk_factor(
            leverage_ratio,
            params.leverage_ratio_floor,
            params.leverage_ratio_ceiling,
            params.leverage_ratio_buffer,
            params.curvature,
        )
        rate = _W(1) - _exp_decay(risk_factor, years_decimal)
        if rate >= params.min_risk_premium_percent:
            risk_premium_rate = rate
            is_minimum_premium = False

    if is_minimum_premium:
        logger.debug("Minimum risk premium applied (leverage_ratio=%s)", leverage_ratio)

    underlying_premium_rate = protection_buyer_apr * years * params.underlying_risk_premium_percent
    premium = protection_amount * (risk_premium_rate + underlying_premium_rate)
    return premium, is_minimum_premium
