"""
SNIPER CONFIGURATION (operator defaults)
"""

SNIPER_CONFIG = {
    # BUY SIDE
    'auto_buy_enabled': False,  # Master switch for sniping
    'buy_amount_base': '100',  # PLS spent per snipe
    'slippage_percent': 10,
    'gas_limit_multiplier': 1.2,
    'gas_price_gwei': None,  # None = let the network decide
    'snipe_new_pairs': False,  # Also snipe fresh WPLS pairs

    # AUTO-SELL LIMITS
    'auto_sell_enabled': False,
    'take_profit_percent': 100,  # Sell at 2x
    'stop_loss_percent': 50,  # Sell at -50%
}


def get_sniper_config():
    """Get a copy of the default sniper configuration."""
    return dict(SNIPER_CONFIG)
