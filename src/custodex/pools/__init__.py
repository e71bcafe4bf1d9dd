"""Constant-product pool math and pool queries."""

from custodex.pools.amm import (
    LiquidityQuote,
    PoolReserves,
    RemovalQuote,
    SwapQuote,
    calculate_initial_liquidity,
    calculate_liquidity_operation,
    calculate_price_impact,
    get_optimal_slippage,
)

__all__ = [
    "LiquidityQuote",
    "PoolReserves",
    "RemovalQuote",
    "SwapQuote",
    "calculate_initial_liquidity",
    "calculate_liquidity_operation",
    "calculate_price_impact",
    "get_optimal_slippage",
]
