from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

LOGGER = logging.getLogger('contractsync.chain')

TRY_AGGREGATE_SELECTOR = Web3.keccak(text='tryAggregate(bool,(address,bytes)[])')[:4]


def hex_prefixed(value: Any) -> str:
    raw = value.hex() if hasattr(value, 'hex') else str(value)
    if raw.startswith('0x'):
        return raw
    return f'0x{raw}'


def topic_to_address(topic: Any) -> str:
    return Web3.to_checksum_address(f'0x{hex_prefixed(topic)[-40:]}')


def event_topic(signature: str) -> str:
    return hex_prefixed(Web3.keccak(text=signature))


@dataclass(frozen=True)
class Method:
    name: str
    output_types: tuple[str, ...]
    required: bool = True

    @property
    def selector(self) -> bytes:
        return bytes(Web3.keccak(text=f'{self.name}()')[:4])


@dataclass(frozen=True)
class Call:
    address: str
    method: Method


@dataclass
class CallResult:
    success: bool
    value: Any = None
    error: str | None = None


def _normalize(abi_type: str, value: Any) -> Any:
    if abi_type == 'address':
        return Web3.to_checksum_address(value)
    if isinstance(value, bytes):
        return hex_prefixed(value)
    return value


def decode_return(method: Method, data: bytes) -> Any:
    values = decode(list(method.output_types), data)
    normalized = [_normalize(t, v) for t, v in zip(method.output_types, values)]
    if len(normalized) == 1:
        return normalized[0]
    return tuple(normalized)


def result_from_return(call: Call, success: bool, data: bytes) -> CallResult:
    if not success:
        return CallResult(success=False, error=f'{call.method.name} reverted')
    if not data:
        return CallResult(success=False, error=f'{call.method.name} returned no data')
    try:
        return CallResult(success=True, value=decode_return(call.method, bytes(data)))
    except (DecodingError, ValueError) as exc:
        return CallResult(success=False, error=f'{call.method.name} decode failed: {exc}')


class ChainClient:
    def __init__(self, rpc_url: str, request_timeout: float = 30) -> None:
        self.rpc_url = rpc_url
        self.web3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={'timeout': request_timeout}))

    async def network_id(self) -> int:
        return int(await self.web3.eth.chain_id)

    async def block_number(self) -> int:
        return int(await self.web3.eth.block_number)

    async def get_logs(self, address: str, topic: str, from_block: int, to_block: int) -> list[Any]:
        return list(
            await self.web3.eth.get_logs(
                {
                    'fromBlock': from_block,
                    'toBlock': to_block,
                    'address': Web3.to_checksum_address(address),
                    'topics': [topic]
                }
            )
        )

    async def call(self, address: str, data: bytes) -> bytes:
        raw = await self.web3.eth.call({'to': Web3.to_checksum_address(address), 'data': hex_prefixed(data)})
        return bytes(raw)


class CallStrategy(Protocol):
    async def batch_call(self, calls: list[Call]) -> list[CallResult]: ...


class MulticallStrategy:
    """Batches every call into one Multicall2 ``tryAggregate(false, calls)`` round trip."""

    def __init__(self, chain: ChainClient, multicall_address: str) -> None:
        self.chain = chain
        self.multicall_address = Web3.to_checksum_address(multicall_address)

    def encode_calls(self, calls: list[Call]) -> bytes:
        payload = encode(
            ['bool', '(address,bytes)[]'],
            [False, [(call.address, call.method.selector) for call in calls]]
        )
        return bytes(TRY_AGGREGATE_SELECTOR) + payload

    async def batch_call(self, calls: list[Call]) -> list[CallResult]:
        if not calls:
            return []
        raw = await self.chain.call(self.multicall_address, self.encode_calls(calls))
        (returned,) = decode(['(bool,bytes)[]'], raw)
        if len(returned) != len(calls):
            raise RuntimeError(f'multicall returned {len(returned)} results for {len(calls)} calls')
        return [
            result_from_return(call, success, data)
            for call, (success, data) in zip(calls, returned)
        ]


class SingleCallStrategy:
    """Issues one ``eth_call`` per call, for providers without a multicall deployment."""

    def __init__(self, chain: ChainClient, concurrency: int = 10) -> None:
        self.chain = chain
        self.concurrency = concurrency

    async def batch_call(self, calls: list[Call]) -> list[CallResult]:
        sem = asyncio.Semaphore(self.concurrency)

        async def one(call: Call) -> CallResult:
            async with sem:
                try:
                    data = await self.chain.call(call.address, call.method.selector)
                except Exception as exc:  # noqa: BLE001
                    LOGGER.debug('call failed address=%s method=%s error=%s', call.address, call.method.name, exc)
                    return CallResult(success=False, error=f'{call.method.name} failed: {exc}')
                return result_from_return(call, True, data)

        return list(await asyncio.gather(*[one(call) for call in calls]))
