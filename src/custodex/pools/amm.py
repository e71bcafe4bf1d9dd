"""Constant-product (x * y = k) pool math.

All reserve arithmetic is done on Python ints in the assets' smallest units.
Amounts handed to the chain are always rounded down, so the pool never pays
out more than the invariant allows. Ratios reported to callers (prices,
share of pool, price impact) are Decimals derived from exact Fractions.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, localcontext
from fractions import Fraction
from math import isqrt
from typing import Optional

from custodex.errors import PoolEmptyError, ValidationError

BPS_DENOMINATOR = 10_000
MAX_SLIPPAGE_BPS = 5_000
MAX_AUTO_SLIPPAGE_BPS = 2_000
DEFAULT_FEE_BPS = 30


@dataclass(frozen=True)
class PoolReserves:
    """Snapshot of a pool's reserves."""

    reserve_a: int
    reserve_b: int
    lp_supply: int = 0
    fee_bps: int = DEFAULT_FEE_BPS

    def __post_init__(self):
        for name in ("reserve_a", "reserve_b", "lp_supply", "fee_bps"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{name} must be a non-negative integer")
        if self.fee_bps >= BPS_DENOMINATOR:
            raise ValidationError("fee_bps must be below 10000")

    @property
    def is_empty(self) -> bool:
        return self.reserve_a == 0 or self.reserve_b == 0

    @property
    def is_unfunded(self) -> bool:
        return self.reserve_a == 0 and self.reserve_b == 0

    @property
    def k(self) -> int:
        return self.reserve_a * self.reserve_b

    def require_liquidity(self) -> None:
        if self.is_empty:
            raise PoolEmptyError(
                "Pool has no liquidity",
                details={"reserveA": self.reserve_a, "reserveB": self.reserve_b},
            )


@dataclass(frozen=True)
class LiquidityQuote:
    """Result of planning a liquidity deposit."""

    optimal_amount_a: int
    optimal_amount_b: int
    deposit_a: int
    deposit_b: int
    lp_tokens: int
    price_a_in_b: Decimal
    price_b_in_a: Decimal
    share_of_pool: Decimal
    min_amount_a: int
    min_amount_b: int
    min_lp_tokens: int
    slippage_bps: int
    slippage_ok: bool

    def to_dict(self) -> dict:
        return {
            "optimalAmountA": self.optimal_amount_a,
            "optimalAmountB": self.optimal_amount_b,
            "depositA": self.deposit_a,
            "depositB": self.deposit_b,
            "lpTokens": self.lp_tokens,
            "priceAInB": str(self.price_a_in_b),
            "priceBInA": str(self.price_b_in_a),
            "shareOfPool": str(self.share_of_pool),
            "minAmountA": self.min_amount_a,
            "minAmountB": self.min_amount_b,
            "minLpTokens": self.min_lp_tokens,
            "slippageBps": self.slippage_bps,
            "slippageOk": self.slippage_ok,
        }


@dataclass(frozen=True)
class SwapQuote:
    """Result of planning a swap."""

    amount_in: int
    amount_out: int
    minimum_out: int
    fee_amount: int
    price_impact: Decimal
    price_impact_bps: int
    market_impact_bps: int
    a_to_b: bool

    def to_dict(self) -> dict:
        return {
            "amountIn": self.amount_in,
            "amountOut": self.amount_out,
            "minimumOut": self.minimum_out,
            "feeAmount": self.fee_amount,
            "priceImpact": str(self.price_impact),
            "priceImpactBps": self.price_impact_bps,
            "marketImpactBps": self.market_impact_bps,
            "aToB": self.a_to_b,
        }


@dataclass(frozen=True)
class RemovalQuote:
    """Result of planning an LP redemption."""

    lp_amount: int
    amount_a: int
    amount_b: int
    min_amount_a: int
    min_amount_b: int

    def to_dict(self) -> dict:
        return {
            "lpAmount": self.lp_amount,
            "amountA": self.amount_a,
            "amountB": self.amount_b,
            "minAmountA": self.min_amount_a,
            "minAmountB": self.min_amount_b,
        }


def _check_amount(name: str, value: int, allow_zero: bool = True) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer amount in smallest units")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValidationError(f"{name} must be positive", details={name: value})


def validate_slippage(slippage_bps: int) -> None:
    """Raise ValidationError unless 0 <= slippage_bps <= 5000."""
    if isinstance(slippage_bps, bool) or not isinstance(slippage_bps, int):
        raise ValidationError("slippage_bps must be an integer")
    if not 0 <= slippage_bps <= MAX_SLIPPAGE_BPS:
        raise ValidationError(
            f"slippage_bps must be between 0 and {MAX_SLIPPAGE_BPS}",
            details={"slippageBps": slippage_bps},
        )


def _to_decimal(value: Fraction, places: int = 18) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = 60
        result = Decimal(value.numerator) / Decimal(value.denominator)
        return result.quantize(Decimal(1).scaleb(-places))


def bps_of(amount: int, bps: int) -> int:
    """``amount * bps / 10000`` rounded down."""
    return amount * bps // BPS_DENOMINATOR


def apply_min_bound(amount: int, slippage_bps: int) -> int:
    """Lowest acceptable amount after slippage, rounded down."""
    return amount * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR


def bps_to_percent(bps: int) -> Decimal:
    return Decimal(bps) / Decimal(100)


def percent_to_bps(percent) -> int:
    """Convert a percentage (e.g. ``"0.5"``) to whole basis points, rounding half up."""
    return int((Decimal(str(percent)) * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def quote_amount(amount_a: int, reserve_a: int, reserve_b: int) -> int:
    """Counter amount of B matching ``amount_a`` at the current ratio."""
    if reserve_a == 0 or reserve_b == 0:
        raise PoolEmptyError("Pool has no liquidity")
    return amount_a * reserve_b // reserve_a


def _liquidity_quote(
    amount_a: int,
    amount_b: int,
    optimal_a: int,
    optimal_b: int,
    deposit_a: int,
    deposit_b: int,
    minted: int,
    new_ra: int,
    new_rb: int,
    new_supply: int,
    slippage_bps: int,
) -> LiquidityQuote:
    # The trimmed deposit may fall short of what the caller offered by at most
    # the slippage bound on each side.
    return LiquidityQuote(
        optimal_amount_a=optimal_a,
        optimal_amount_b=optimal_b,
        deposit_a=deposit_a,
        deposit_b=deposit_b,
        lp_tokens=minted,
        price_a_in_b=_to_decimal(Fraction(new_rb, new_ra)),
        price_b_in_a=_to_decimal(Fraction(new_ra, new_rb)),
        share_of_pool=_to_decimal(Fraction(minted * 100, new_supply)),
        min_amount_a=apply_min_bound(deposit_a, slippage_bps),
        min_amount_b=apply_min_bound(deposit_b, slippage_bps),
        min_lp_tokens=apply_min_bound(minted, slippage_bps),
        slippage_bps=slippage_bps,
        slippage_ok=(
            deposit_a >= apply_min_bound(amount_a, slippage_bps)
            and deposit_b >= apply_min_bound(amount_b, slippage_bps)
        ),
    )


def calculate_initial_liquidity(
    amount_a: int,
    amount_b: int,
    reserves: PoolReserves,
    slippage_bps: int = 50,
) -> LiquidityQuote:
    """Plan the first deposit into a pool with no reserves; it sets the ratio.

    Raises:
        ValidationError: Non-positive amounts, a funded pool, or a deposit
            too small to mint any LP tokens
    """
    _check_amount("amount_a", amount_a, allow_zero=False)
    _check_amount("amount_b", amount_b, allow_zero=False)
    validate_slippage(slippage_bps)
    if not reserves.is_unfunded:
        raise ValidationError(
            "Pool already holds reserves",
            details={"reserveA": reserves.reserve_a, "reserveB": reserves.reserve_b},
        )

    minted = isqrt(amount_a * amount_b)
    if minted <= 0:
        raise ValidationError("Initial deposit too small to mint liquidity")
    return _liquidity_quote(
        amount_a, amount_b, amount_a, amount_b, amount_a, amount_b,
        minted, amount_a, amount_b, reserves.lp_supply + minted, slippage_bps,
    )


def calculate_liquidity_operation(
    amount_a: int,
    amount_b: int,
    reserves: PoolReserves,
    slippage_bps: int = 50,
) -> LiquidityQuote:
    """Plan a two-sided liquidity deposit into a funded pool.

    The desired amounts are trimmed so the deposit matches the pool ratio:
    whichever side would overshoot is reduced to the amount implied by the
    other. ``slippage_ok`` is false when the trim takes more than
    ``slippage_bps`` off either requested amount.

    Raises:
        ValidationError: Non-positive amounts, an out-of-range slippage or a
            deposit too small to mint any LP tokens
        PoolEmptyError: Either reserve is zero
    """
    _check_amount("amount_a", amount_a, allow_zero=False)
    _check_amount("amount_b", amount_b, allow_zero=False)
    validate_slippage(slippage_bps)
    reserves.require_liquidity()

    ra, rb, supply = reserves.reserve_a, reserves.reserve_b, reserves.lp_supply
    optimal_b = quote_amount(amount_a, ra, rb)
    optimal_a = quote_amount(amount_b, rb, ra)
    if optimal_b <= amount_b:
        deposit_a, deposit_b = amount_a, optimal_b
    else:
        deposit_a, deposit_b = optimal_a, amount_b
    if deposit_a == 0 or deposit_b == 0:
        raise ValidationError("Deposit too small for the pool ratio")
    if supply == 0:
        minted = isqrt(deposit_a * deposit_b)
    else:
        minted = min(deposit_a * supply // ra, deposit_b * supply // rb)
    if minted == 0:
        raise ValidationError(
            "Deposit too small to mint liquidity",
            details={"depositA": deposit_a, "depositB": deposit_b},
        )

    return _liquidity_quote(
        amount_a, amount_b, optimal_a, optimal_b, deposit_a, deposit_b,
        minted, ra + deposit_a, rb + deposit_b, supply + minted, slippage_bps,
    )


def calculate_swap_output(amount_in: int, reserve_in: int, reserve_out: int, fee_bps: int) -> int:
    """Output amount for an exact input, fee taken from the input, rounded down."""
    _check_amount("amount_in", amount_in, allow_zero=False)
    if reserve_in == 0 or reserve_out == 0:
        raise PoolEmptyError("Pool has no liquidity")
    amount_in_with_fee = amount_in * (BPS_DENOMINATOR - fee_bps)
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * BPS_DENOMINATOR + amount_in_with_fee
    return numerator // denominator


def _impact_fraction(amount_in: int, reserve_in: int, fee_bps: int) -> Fraction:
    gamma = BPS_DENOMINATOR - fee_bps
    return 1 - Fraction(reserve_in * gamma, reserve_in * BPS_DENOMINATOR + gamma * amount_in)


def market_impact_bps(amount_in: int, reserve_in: int) -> int:
    """Price movement caused by the trade alone, fee excluded, in bps rounded up."""
    if reserve_in == 0:
        raise PoolEmptyError("Pool has no liquidity")
    impact = _impact_fraction(amount_in, reserve_in, 0) * BPS_DENOMINATOR
    return -(-impact.numerator // impact.denominator)


def calculate_price_impact(amount_a: int, amount_b: int, reserves: PoolReserves) -> Decimal:
    """Price impact in percent of trading the given amounts into the pool.

    Impact compares the effective execution price to the pre-trade spot
    price, fee included. It is computed from the exact fee-adjusted
    relation, not the rounded output, so it never decreases as the trade
    grows. When both amounts are given the larger impact of the two
    directions is reported.
    """
    _check_amount("amount_a", amount_a)
    _check_amount("amount_b", amount_b)
    reserves.require_liquidity()

    impact = Fraction(0)
    if amount_a:
        impact = max(impact, _impact_fraction(amount_a, reserves.reserve_a, reserves.fee_bps))
    if amount_b:
        impact = max(impact, _impact_fraction(amount_b, reserves.reserve_b, reserves.fee_bps))
    return _to_decimal(impact * 100, places=6)


def get_optimal_slippage(reserves: PoolReserves, amount_a: int, amount_b: int = 0) -> int:
    """Suggested slippage tolerance in bps for a trade of this size.

    Small trades relative to pool depth get tight bounds; larger ones get
    1.5 times their share of the pool, capped at 20%.
    """
    _check_amount("amount_a", amount_a)
    _check_amount("amount_b", amount_b)
    reserves.require_liquidity()

    ratio = max(
        Fraction(amount_a, reserves.reserve_a),
        Fraction(amount_b, reserves.reserve_b),
    )
    ratio_bps = ratio * BPS_DENOMINATOR

    if ratio_bps < 10:
        return 10
    if ratio_bps < 100:
        return 50
    if ratio_bps < 300:
        return 100
    scaled = ratio_bps * 3 / 2
    return min(-(-scaled.numerator // scaled.denominator), MAX_AUTO_SLIPPAGE_BPS)


def quote_swap(
    amount_in: int,
    reserves: PoolReserves,
    a_to_b: bool = True,
    slippage_bps: Optional[int] = None,
) -> SwapQuote:
    """Plan a swap of ``amount_in`` through the pool.

    When ``slippage_bps`` is omitted the suggested tolerance for the trade
    size is used.
    """
    _check_amount("amount_in", amount_in, allow_zero=False)
    reserves.require_liquidity()

    if a_to_b:
        reserve_in, reserve_out = reserves.reserve_a, reserves.reserve_b
        impact = calculate_price_impact(amount_in, 0, reserves)
    else:
        reserve_in, reserve_out = reserves.reserve_b, reserves.reserve_a
        impact = calculate_price_impact(0, amount_in, reserves)

    if slippage_bps is None:
        slippage_bps = (
            get_optimal_slippage(reserves, amount_in, 0)
            if a_to_b
            else get_optimal_slippage(reserves, 0, amount_in)
        )
    validate_slippage(slippage_bps)

    amount_out = calculate_swap_output(amount_in, reserve_in, reserve_out, reserves.fee_bps)
    return SwapQuote(
        amount_in=amount_in,
        amount_out=amount_out,
        minimum_out=apply_min_bound(amount_out, slippage_bps),
        fee_amount=bps_of(amount_in, reserves.fee_bps),
        price_impact=impact,
        price_impact_bps=int(impact * 100),
        market_impact_bps=market_impact_bps(amount_in, reserve_in),
        a_to_b=a_to_b,
    )


def calculate_removal(lp_amount: int, reserves: PoolReserves, slippage_bps: int = 50) -> RemovalQuote:
    """Plan redeeming ``lp_amount`` LP tokens for a pro-rata share of reserves."""
    _check_amount("lp_amount", lp_amount, allow_zero=False)
    validate_slippage(slippage_bps)
    reserves.require_liquidity()
    if reserves.lp_supply == 0:
        raise PoolEmptyError("Pool has no LP supply")
    if lp_amount > reserves.lp_supply:
        raise ValidationError(
            "LP amount exceeds pool supply",
            details={"lpAmount": lp_amount, "lpSupply": reserves.lp_supply},
        )

    amount_a = lp_amount * reserves.reserve_a // reserves.lp_supply
    amount_b = lp_amount * reserves.reserve_b // reserves.lp_supply
    return RemovalQuote(
        lp_amount=lp_amount,
        amount_a=amount_a,
        amount_b=amount_b,
        min_amount_a=apply_min_bound(amount_a, slippage_bps),
        min_amount_b=apply_min_bound(amount_b, slippage_bps),
    )
