import unittest

from eth_abi import decode, encode
from web3 import Web3

from services.common.chain import (
    TRY_AGGREGATE_SELECTOR,
    Call,
    Method,
    MulticallStrategy,
    SingleCallStrategy,
    decode_return,
    topic_to_address
)

MULTICALL = Web3.to_checksum_address('0x' + '5b' * 20)
TARGET = Web3.to_checksum_address('0x' + '12' * 20)
TOKEN = Web3.to_checksum_address('0x' + '34' * 20)

EXPIRATION = Method('expirationTimestamp', ('uint256',))
COLLATERAL = Method('collateralToken', ('address',))
IDENTIFIER = Method('priceIdentifier', ('bytes32',), required=False)


class RecordingChain:
    def __init__(self, responses: dict[bytes, bytes] | None = None, reply: bytes = b'') -> None:
        self.responses = responses or {}
        self.reply = reply
        self.requests: list[tuple[str, bytes]] = []

    async def call(self, address: str, data: bytes) -> bytes:
        self.requests.append((address, data))
        if self.responses:
            if data not in self.responses:
                raise ValueError('execution reverted')
            return self.responses[data]
        return self.reply


class MethodTests(unittest.TestCase):
    def test_selector_is_keccak_of_signature(self) -> None:
        self.assertEqual(Method('decimals', ('uint8',)).selector, bytes.fromhex('313ce567'))
        self.assertEqual(Method('symbol', ('string',)).selector, bytes.fromhex('95d89b41'))

    def test_decode_normalizes_addresses_and_bytes(self) -> None:
        self.assertEqual(decode_return(COLLATERAL, encode(['address'], [TOKEN])), TOKEN)
        identifier = b'ETHUSD'.ljust(32, b'\x00')
        self.assertEqual(decode_return(IDENTIFIER, encode(['bytes32'], [identifier])), '0x' + identifier.hex())

    def test_topic_to_address(self) -> None:
        topic = '0x' + '0' * 24 + TOKEN[2:].lower()
        self.assertEqual(topic_to_address(topic), TOKEN)


class MulticallStrategyTests(unittest.IsolatedAsyncioTestCase):
    async def test_encodes_try_aggregate_and_decodes_per_call_results(self) -> None:
        reply = encode(
            ['(bool,bytes)[]'],
            [[(True, encode(['uint256'], [1_700_000_000])), (False, b''), (True, b'\x01')]]
        )
        chain = RecordingChain(reply=reply)
        strategy = MulticallStrategy(chain, MULTICALL)
        calls = [Call(TARGET, EXPIRATION), Call(TARGET, COLLATERAL), Call(TARGET, IDENTIFIER)]

        results = await strategy.batch_call(calls)

        address, data = chain.requests[0]
        self.assertEqual(address, MULTICALL)
        self.assertEqual(data[:4], bytes(TRY_AGGREGATE_SELECTOR))
        require_success, encoded_calls = decode(['bool', '(address,bytes)[]'], data[4:])
        self.assertFalse(require_success)
        self.assertEqual([target.lower() for target, _ in encoded_calls], [TARGET.lower()] * 3)
        self.assertEqual(encoded_calls[0][1], EXPIRATION.selector)

        self.assertTrue(results[0].success)
        self.assertEqual(results[0].value, 1_700_000_000)
        self.assertFalse(results[1].success)
        self.assertIn('reverted', results[1].error)
        self.assertFalse(results[2].success)
        self.assertIn('decode failed', results[2].error)

    async def test_empty_batch_makes_no_request(self) -> None:
        chain = RecordingChain()

        self.assertEqual(await MulticallStrategy(chain, MULTICALL).batch_call([]), [])
        self.assertEqual(chain.requests, [])

    async def test_mismatched_result_count_is_a_hard_error(self) -> None:
        chain = RecordingChain(reply=encode(['(bool,bytes)[]'], [[]]))

        with self.assertRaises(RuntimeError):
            await MulticallStrategy(chain, MULTICALL).batch_call([Call(TARGET, EXPIRATION)])


class SingleCallStrategyTests(unittest.IsolatedAsyncioTestCase):
    async def test_failed_call_does_not_affect_the_others(self) -> None:
        chain = RecordingChain(responses={EXPIRATION.selector: encode(['uint256'], [42])})
        calls = [Call(TARGET, EXPIRATION), Call(TARGET, COLLATERAL)]

        results = await SingleCallStrategy(chain, concurrency=1).batch_call(calls)

        self.assertEqual(results[0].value, 42)
        self.assertFalse(results[1].success)
        self.assertIn('execution reverted', results[1].error)
