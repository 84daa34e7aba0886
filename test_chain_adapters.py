import asyncio
import unittest
from unittest.mock import AsyncMock

from websockets.exceptions import ConnectionClosedError

from chain_adapters import EVMAdapter, WebSocketAdapter
from chain_adapters.abis import ERC20_ABI
from fake_chain import WPLS
from sniper_errors import TransientProviderError


class GoneSocket:
    """A socket whose peer has already hung up"""

    def __aiter__(self):
        return self

    async def __anext__(self):
        raise ConnectionClosedError(None, None)


class TestWebSocketAdapter(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.adapter = WebSocketAdapter({'name': 'fakechain', 'ws_url': 'ws://127.0.0.1:1'})

    async def asyncTearDown(self):
        await self.adapter.close()

    async def subscribe(self, socket, subscription_id, closed):
        self.adapter._ws = socket
        self.adapter._request = AsyncMock(return_value=subscription_id)
        handle = await self.adapter.subscribe({'topics': []}, lambda log: None,
                                              lambda: closed.append(subscription_id))
        self.adapter._ws = None
        return handle

    async def test_lost_socket_tells_its_subscribers(self):
        dead, other = GoneSocket(), GoneSocket()
        closed = []
        await self.subscribe(dead, "0xa", closed)
        await self.subscribe(other, "0xb", closed)
        pending = asyncio.get_running_loop().create_future()
        self.adapter._pending[7] = pending

        await self.adapter._read_loop(dead)

        self.assertEqual(closed, ["0xa"])
        self.assertEqual(list(self.adapter._handlers), ["0xb"])
        with self.assertRaises(TransientProviderError):
            await pending

    async def test_unsubscribed_handle_is_not_told(self):
        dead = GoneSocket()
        closed = []
        handle = await self.subscribe(dead, "0xa", closed)
        await handle.unsubscribe()

        await self.adapter._read_loop(dead)

        self.assertEqual(closed, [])

    async def test_close_handler_error_is_contained(self):
        dead = GoneSocket()
        closed = []
        self.adapter._ws = dead
        self.adapter._request = AsyncMock(side_effect=["0xa", "0xb"])

        def broken():
            raise RuntimeError("consumer gone")

        await self.adapter.subscribe({'topics': []}, lambda log: None, broken)
        await self.adapter.subscribe({'topics': []}, lambda log: None, lambda: closed.append("0xb"))
        self.adapter._ws = None
        await self.adapter._read_loop(dead)

        self.assertEqual(closed, ["0xb"])


class TestEVMAdapter(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.adapter = EVMAdapter({'name': 'fakechain', 'rpc_url': 'http://127.0.0.1:1'})

    async def asyncTearDown(self):
        await self.adapter.close()

    async def test_contract_call_before_connect(self):
        with self.assertRaises(TransientProviderError):
            await self.adapter.call(WPLS, ERC20_ABI, 'symbol')

    async def test_writes_before_connect(self):
        with self.assertRaises(TransientProviderError):
            await self.adapter.estimate_gas({'to': WPLS})
        with self.assertRaises(TransientProviderError):
            await self.adapter.send_raw_transaction(b"\x01")


if __name__ == "__main__":
    unittest.main()
