"""
Sniper Bot - composition root

Builds every component of one bot from the chain description and wires
them together:

    PairWatcher / MintWatcher --+-> StreamGateway (every event, backfill flagged historical)
                               +-> ExecutionEngine (live launch events only, own task)
    ExecutionEngine.on_snipe  --> ExitEngine.create_auto_limit_orders
    PriceMonitor --> ExitEngine --> ExecutionEngine.sell_token

Several bots can share a process through BotRegistry.
"""
import asyncio
import logging
from functools import partial
from typing import Any, Dict, List, Optional

from chain_adapters import get_provider
from config import DB_PATH, PRIVATE_KEY
from modules.mint_watcher import MintWatcher
from modules.pair_watcher import PairWatcher
from modules.stream_gateway import StreamConsumer, StreamGateway
from modules.token_info import TokenInfoService
from sniper_errors import NotInitialized, SniperError
from trading import (
    ConfigManager, ExecutionEngine, ExitEngine, LimitOrder, OrderStatus, OrderType,
    PositionStatus, PositionTracker, PriceMonitor, SellResult, SnipeResult, SwapService,
    TokenPosition, TradingDB, WalletManager,
)

logger = logging.getLogger(__name__)


class SniperBot:
    def __init__(self, chain_config: Dict, bot_id: str = "default", provider=None,
                 db: Optional[TradingDB] = None, sniper_config: Optional[Dict] = None):
        self.bot_id = bot_id
        chain = chain_config.get('chain', {})
        dex = chain_config.get('dex', {})
        watcher = chain_config.get('watcher', {})
        trading = chain_config.get('trading', {})
        enrichment = chain_config.get('enrichment', {})

        self.launch_contract = chain_config.get('launch', {})['contract']
        self.wrapped_native = dex['wrapped_native']
        router = dex['routers'][dex.get('router', 'v2')]
        self.price_check_interval = trading.get('price_check_interval', 10)

        self.provider = provider or get_provider(dict(chain, rpc_timeout=trading.get('rpc_timeout', 10)))
        self.db = db if db is not None else TradingDB(DB_PATH)
        self.gateway = StreamGateway()

        self.config_manager = ConfigManager(sniper_config)
        self.position_tracker = PositionTracker(self.db)
        self.wallet = WalletManager(self.provider, chain.get('chain_id', 369),
                                    trading.get('confirmation_timeout', 120))
        self.swap = SwapService(self.provider, self.wallet, router, self.wrapped_native,
                                trading.get('deadline_seconds', 300))
        self.token_info = TokenInfoService(
            self.provider,
            watched_address=self.launch_contract,
            concurrency=enrichment.get('concurrency', 3),
            retries=enrichment.get('retries', 2),
            base_delay=enrichment.get('base_delay', 0.25),
            max_mints=enrichment.get('max_mints', 30),
            max_pairs=enrichment.get('max_pairs', 20),
        )
        self.engine = ExecutionEngine(
            self.wallet, self.swap, self.token_info, self.position_tracker, self.config_manager,
            launch_contract=self.launch_contract,
            wrapped_native=self.wrapped_native,
            confirmations=trading.get('confirmations', 1),
        )
        self.price_monitor = PriceMonitor(self.swap, self.position_tracker, self.token_info,
                                          self.price_check_interval)
        self.exits = ExitEngine(self.engine, self.position_tracker, self.price_monitor, self.config_manager)

        watcher_kwargs = dict(
            history_blocks=watcher.get('history_blocks', 1000),
            max_block_range=watcher.get('max_block_range', 2000),
            dedup_window=watcher.get('dedup_window', 5000),
        )
        self.pair_watcher = PairWatcher(self.provider, dex.get('factories', {}),
                                        poll_interval=watcher.get('pair_poll_interval', 5), **watcher_kwargs)
        self.mint_watcher = MintWatcher(self.provider, self.launch_contract,
                                        poll_interval=watcher.get('mint_poll_interval', 3), **watcher_kwargs)

        self.engine.on_snipe(self._on_snipe)
        self.engine.on_position_update(self._on_position_update)
        self.exits.on_sell(self._on_sell)
        self.price_monitor.on_price_update(
            lambda sample: self.gateway.publish(dict(sample.to_dict(), type='price'))
        )

        self.running = False
        self._connected = False
        self._tasks = set()

    # ---- wiring ----

    async def _on_chain_event(self, event, watcher):
        live = watcher.is_live_event(event)
        self.gateway.publish(dict(event.to_dict(), historical=not live))
        # Backfilled launches are reported, never bought
        if not live or self.engine.snipe_target(event) is None:
            return
        # Snipes run beside the watcher so detection is never blocked on a trade
        task = asyncio.create_task(self.engine.handle_chain_event(event),
                                   name=f"snipe-{event.identity[0][:10]}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_snipe(self, result: SnipeResult):
        self.gateway.publish(dict(result.to_dict(), type='snipe'))
        if result.success and result.position is not None:
            try:
                self.exits.create_auto_limit_orders(result.position)
            except SniperError as e:
                logger.error(f"❌ Could not create exit orders for {result.token_address}: {e}")

    def _on_position_update(self, position: TokenPosition):
        self.gateway.publish(dict(position.to_dict(), type='position'))

    def _on_sell(self, position: Optional[TokenPosition], order: LimitOrder):
        self.gateway.publish({
            'type': 'sell',
            'order': order.to_dict(),
            'position': position.to_dict() if position else None,
        })

    # ---- lifecycle ----

    def initialize(self, private_key: Optional[str] = None):
        key = private_key or PRIVATE_KEY
        if not key:
            raise NotInitialized("No private key configured (SNIPER_PRIVATE_KEY)")
        self.engine.initialize(key)

    async def connect(self) -> bool:
        if not self._connected:
            self._connected = await self.provider.connect()
        return self._connected

    async def start(self, pairs: bool = True, mints: bool = True, include_historical: bool = True,
                    from_block: Optional[int] = None):
        """
        Start watchers and, when a wallet is loaded, the engine and exit monitor.
        Without a wallet the bot only watches.
        """
        if self.running:
            return
        if not await self.connect():
            raise SniperError("Could not connect to any RPC endpoint")

        if self.engine.initialized:
            self.engine.start()
            self.exits.start(self.price_check_interval)
        else:
            logger.warning("⚠️  No wallet loaded: watch-only mode")

        try:
            if mints:
                await self.mint_watcher.start_listening(partial(self._on_chain_event, watcher=self.mint_watcher),
                                                        from_block=from_block,
                                                        include_historical=include_historical)
            if pairs:
                await self.pair_watcher.start_listening(partial(self._on_chain_event, watcher=self.pair_watcher),
                                                        from_block=from_block,
                                                        include_historical=include_historical)
        except Exception:
            await self.stop()
            raise
        self.running = True
        logger.info(f"🟢 Bot {self.bot_id} started")

    async def stop(self):
        """Stop watching and trading; in-flight snipes are allowed to finish"""
        await self.pair_watcher.stop_listening()
        await self.mint_watcher.stop_listening()
        await self.exits.stop()
        self.engine.stop()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self.running = False
        logger.info(f"🔴 Bot {self.bot_id} stopped")

    async def close(self):
        await self.stop()
        self.gateway.close()
        await self.provider.close()
        self.db.close()

    # ---- operator surface ----

    def status(self) -> Dict[str, Any]:
        return {
            'bot_id': self.bot_id,
            'running': self.running,
            'engine_running': self.engine.running,
            'initialized': self.engine.initialized,
            'wallet_address': self.engine.wallet_address,
            'pair_mode': self.pair_watcher.mode,
            'mint_mode': self.mint_watcher.mode,
            'monitored_tokens': self.price_monitor.tracked_tokens,
            'config': self.config_manager.get_config(),
            'stats': self.position_tracker.get_stats(),
        }

    def update_config(self, **changes) -> Dict:
        return self.config_manager.update(**changes).to_dict()

    async def execute_snipe(self, token_address: str) -> SnipeResult:
        return await self.engine.execute_snipe(token_address)

    async def sell_token(self, token_address: str, amount: Optional[str] = None) -> SellResult:
        result = await self.engine.sell_token(token_address, amount)
        if result.success and not self.position_tracker.is_holding(token_address):
            self.position_tracker.cancel_pending_orders(token_address)
            self.price_monitor.remove_token(token_address)
        return result

    def create_limit_order(self, token_address: str, order_type, target_price_base,
                           amount_tokens: Optional[str] = None,
                           slippage_percent: Optional[float] = None) -> LimitOrder:
        return self.exits.create_limit_order(token_address, OrderType(order_type), target_price_base,
                                             amount_tokens, slippage_percent)

    def cancel_limit_order(self, order_id: str) -> LimitOrder:
        return self.exits.cancel_limit_order(order_id)

    def mark_position_failed(self, token_address: str, error: Optional[str] = None) -> TokenPosition:
        position = self.position_tracker.mark_failed(token_address, error)
        self.position_tracker.cancel_pending_orders(token_address)
        self.price_monitor.remove_token(token_address)
        return position

    def get_positions(self, status: Optional[PositionStatus] = None) -> List[TokenPosition]:
        return self.position_tracker.get_positions(status)

    def get_orders(self, token_address: Optional[str] = None,
                   status: Optional[OrderStatus] = None) -> List[LimitOrder]:
        return self.position_tracker.get_orders(token_address, status)

    async def get_balance(self) -> str:
        return await self.engine.get_balance()

    async def recent_launches(self, block_range: Optional[int] = None) -> List[Dict]:
        return await self.token_info.enrich_mints(await self.mint_watcher.get_recent_mints(block_range))

    async def recent_pairs(self, block_range: Optional[int] = None) -> List[Dict]:
        return await self.token_info.enrich_pairs(await self.pair_watcher.get_recent_pairs(block_range))

    def subscribe(self) -> StreamConsumer:
        return self.gateway.subscribe()


class BotRegistry:
    """Named SniperBot instances in one process"""

    def __init__(self):
        self._bots: Dict[str, SniperBot] = {}

    def create(self, bot_id: str, chain_config: Dict, **kwargs) -> SniperBot:
        if bot_id in self._bots:
            raise ValueError(f"Bot {bot_id} already exists")
        bot = SniperBot(chain_config, bot_id=bot_id, **kwargs)
        self._bots[bot_id] = bot
        return bot

    def get(self, bot_id: str) -> Optional[SniperBot]:
        return self._bots.get(bot_id)

    def ids(self) -> List[str]:
        return list(self._bots)

    async def remove(self, bot_id: str):
        bot = self._bots.pop(bot_id, None)
        if bot is not None:
            await bot.close()

    async def close_all(self):
        for bot_id in list(self._bots):
            await self.remove(bot_id)
