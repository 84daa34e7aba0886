import argparse
import asyncio
import logging
import signal

from colorama import init, Fore, Style

from config import CHAIN_CONFIG, DB_PATH, LOG_LEVEL, PRIVATE_KEY
from sniper_bot import SniperBot
from sniper_errors import NotInitialized
from trading import TradingDB

init(autoreset=True)

logger = logging.getLogger(__name__)


def print_banner(bot: SniperBot, args):
    chain = CHAIN_CONFIG.get('chain', {})
    config = bot.config_manager.get()
    print(f"\n{Fore.CYAN}{'='*60}")
    print(f"{Fore.MAGENTA}🎯 PULSECHAIN LAUNCH SNIPER{Style.RESET_ALL}")
    print(f"{Fore.CYAN}{'='*60}")
    print(f"{Fore.YELLOW}Chain:      {Fore.WHITE}{chain.get('name', 'pulsechain')} ({chain.get('chain_id', 369)})")
    print(f"{Fore.YELLOW}Launchpad:  {Fore.WHITE}{bot.launch_contract}")
    print(f"{Fore.YELLOW}Watching:   {Fore.WHITE}"
          f"{', '.join(w for w, on in (('mints', args.mints), ('pairs', args.pairs)) if on) or 'nothing'}")
    wallet = bot.engine.wallet_address
    print(f"{Fore.YELLOW}Wallet:     {Fore.WHITE if wallet else Fore.RED}{wallet or 'NOT LOADED (watch-only)'}")
    auto_buy = Fore.GREEN + 'ON' if config.auto_buy_enabled else Fore.RED + 'OFF'
    auto_sell = Fore.GREEN + 'ON' if config.auto_sell_enabled else Fore.RED + 'OFF'
    print(f"{Fore.YELLOW}Auto-buy:   {auto_buy}{Fore.WHITE} ({config.buy_amount_base} PLS, "
          f"{config.slippage_percent}% slippage)")
    print(f"{Fore.YELLOW}Auto-sell:  {auto_sell}{Fore.WHITE} (TP {config.take_profit_percent}% / "
          f"SL {config.stop_loss_percent}%)")
    print(f"{Fore.CYAN}{'='*60}\n")


def print_event(event: dict):
    kind = event.get('type')
    tag = "HISTORY " if event.get('historical') else ""
    if kind == 'mint':
        print(f"{Fore.GREEN}🪙 [{tag}MINT] {Fore.WHITE}{event['token_address']} "
              f"-> {event['recipient']} (block {event['block_number']})")
    elif kind == 'pair':
        print(f"{Fore.BLUE}🔗 [{tag}PAIR {event['factory_version'].upper()}] {Fore.WHITE}{event['pair_address']} "
              f"{event['token0']} / {event['token1']} (block {event['block_number']})")
    elif kind == 'snipe':
        if event['success']:
            print(f"{Fore.GREEN}💰 [SNIPE] {event['token_address']}: {event['amount_tokens']} tokens "
                  f"for {event['amount_spent_base']} PLS (tx {event['tx_hash']})")
        else:
            print(f"{Fore.RED}❌ [SNIPE FAILED] {event['token_address']}: {event['error']}")
    elif kind == 'sell':
        order = event['order']
        position = event.get('position') or {}
        pl = position.get('profit_loss_percent')
        color = Fore.GREEN if pl and not pl.startswith('-') else Fore.RED
        print(f"{color}💸 [{order['order_type'].upper()}] {order['token_address']} sold "
              f"(P/L: {pl}%, tx {order['tx_hash']})")


async def print_stream(bot: SniperBot):
    async for event in bot.subscribe():
        print_event(event)


async def run(args):
    db = TradingDB(args.db)
    bot = SniperBot(CHAIN_CONFIG, db=db)

    if args.auto_buy or args.auto_sell:
        bot.update_config(auto_buy_enabled=args.auto_buy, auto_sell_enabled=args.auto_sell)

    if PRIVATE_KEY:
        try:
            bot.initialize(PRIVATE_KEY)
        except NotInitialized as e:
            print(f"{Fore.RED}⚠️  Wallet not loaded: {e}")

    print_banner(bot, args)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still ends asyncio.run()
            pass

    printer = asyncio.create_task(print_stream(bot), name="console-printer")
    try:
        await bot.start(pairs=args.pairs, mints=args.mints,
                        include_historical=not args.no_history, from_block=args.from_block)
        await stop_event.wait()
        print(f"\n{Fore.YELLOW}Shutting down...")
    finally:
        await bot.close()
        await printer
        stats = bot.position_tracker.get_stats()
        print(f"{Fore.CYAN}📊 Positions: {stats['total_positions']} "
              f"(holding {stats['holding_positions']}, sold {stats['sold_positions']}), "
              f"realized {stats['total_realized_base']} PLS")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="PulseChain launch sniper")
    parser.add_argument("--pairs", action=argparse.BooleanOptionalAction, default=True,
                        help="Watch PulseX PairCreated events (default: on)")
    parser.add_argument("--mints", action=argparse.BooleanOptionalAction, default=True,
                        help="Watch mints to the launch contract (default: on)")
    parser.add_argument("--no-history", action="store_true",
                        help="Skip the historical backfill on start")
    parser.add_argument("--from-block", type=int, default=None,
                        help="Backfill from this block instead of current - history_blocks")
    parser.add_argument("--auto-buy", action="store_true",
                        help="Buy every detected launch (needs SNIPER_PRIVATE_KEY)")
    parser.add_argument("--auto-sell", action="store_true",
                        help="Create take-profit / stop-loss orders after each snipe")
    parser.add_argument("--db", default=DB_PATH, help="SQLite database path")
    parser.add_argument("--log-level", default=LOG_LEVEL, help="DEBUG, INFO, WARNING, ERROR")
    return parser


def cli():
    args = build_parser().parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        print(f"\n{Fore.YELLOW}Monitoring stopped.")


if __name__ == "__main__":
    cli()
