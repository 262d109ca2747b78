from __future__ import annotations

import asyncio
from typing import Any

from web3 import Web3

from services.common.chain import Call, CallResult
from services.common.errors import StoreError
from services.common.tables import AppTables, MemoryTable, memory_tables
from services.synchronizer.contracts import ContractsOrchestrator
from services.synchronizer.creators import CREATED_LONG_SHORT_PAIR_TOPIC, CreatorDiscovery
from services.synchronizer.erc20s import Erc20Service
from services.synchronizer.models import EMP_FAMILY, LSP_FAMILY
from services.synchronizer.registry import NEW_CONTRACT_REGISTERED_TOPIC, RegistryDiscovery
from services.synchronizer.state import ContractStateFetcher

NOW = 1_700_000_000
DAY = 86_400

REGISTRY = Web3.to_checksum_address('0x' + 'aa' * 20)
CREATOR_A = Web3.to_checksum_address('0x' + 'bb' * 20)
CREATOR_B = Web3.to_checksum_address('0x' + 'cc' * 20)
COLLATERAL = Web3.to_checksum_address('0x' + 'c0' * 20)
SYNTHETIC = Web3.to_checksum_address('0x' + 'd0' * 20)


def address(n: int) -> str:
    return Web3.to_checksum_address(f'0x{n:040x}')


def clock() -> float:
    return float(NOW)


def registration_log(contract: str, block_number: int) -> dict[str, Any]:
    return {
        'topics': [NEW_CONTRACT_REGISTERED_TOPIC, '0x' + '0' * 24 + contract[2:].lower()],
        'blockNumber': block_number,
        'transactionHash': f'0x{block_number:064x}'
    }


def creation_log(contract: str, block_number: int) -> dict[str, Any]:
    return {
        'topics': [CREATED_LONG_SHORT_PAIR_TOPIC, '0x' + '0' * 24 + contract[2:].lower()],
        'blockNumber': block_number,
        'transactionHash': f'0x{block_number:064x}'
    }


def emp_fields(expiration: int, state: int = 0) -> dict[str, Any]:
    return {
        'expirationTimestamp': expiration,
        'contractState': state,
        'collateralCurrency': COLLATERAL,
        'tokenCurrency': SYNTHETIC
    }


def lsp_fields(expiration: int, state: int = 0) -> dict[str, Any]:
    return {
        'expirationTimestamp': expiration,
        'contractState': state,
        'collateralToken': COLLATERAL,
        'longToken': address(0x10001),
        'shortToken': address(0x10002),
        'pairName': 'ETH/USD pair'
    }


class FakeChain:
    def __init__(self, head: int = 100, network: int = 1) -> None:
        self.head = head
        self.network = network
        self.head_error: Exception | None = None
        self.logs: dict[tuple[str, str], list[dict[str, Any]]] = {}
        self.failing_sources: set[str] = set()
        self.log_requests: list[tuple[str, int, int]] = []

    def add_log(self, source: str, topic: str, log: dict[str, Any]) -> None:
        self.logs.setdefault((source, topic), []).append(log)

    async def network_id(self) -> int:
        return self.network

    async def block_number(self) -> int:
        if self.head_error is not None:
            raise self.head_error
        return self.head

    async def get_logs(self, address: str, topic: str, from_block: int, to_block: int) -> list[Any]:
        self.log_requests.append((address, from_block, to_block))
        if address in self.failing_sources:
            raise ConnectionError(f'logs unavailable for {address}')
        return [
            log for log in self.logs.get((address, topic), [])
            if from_block <= log['blockNumber'] <= to_block
        ]


class FakeStrategy:
    """Answers calls from ``contracts``; a missing field or an address in ``failing`` reverts."""

    def __init__(self, contracts: dict[str, dict[str, Any]] | None = None) -> None:
        self.contracts = contracts or {}
        self.failing: set[str] = set()
        self.hang = False
        self.invocations: list[list[Call]] = []

    def addresses_per_invocation(self) -> list[list[str]]:
        return [list(dict.fromkeys(call.address for call in calls)) for calls in self.invocations]

    async def batch_call(self, calls: list[Call]) -> list[CallResult]:
        self.invocations.append(list(calls))
        if self.hang:
            await asyncio.sleep(3600)
        results = []
        for call in calls:
            fields = self.contracts.get(call.address, {})
            if call.address in self.failing or call.method.name not in fields:
                results.append(CallResult(success=False, error=f'{call.method.name} reverted'))
            else:
                results.append(CallResult(success=True, value=fields[call.method.name]))
        return results


class FailingTable(MemoryTable):
    def __init__(self, name: str, failing_keys: set[str]) -> None:
        super().__init__(name)
        self.failing_keys = failing_keys

    async def upsert(self, key: str, value: dict[str, Any]) -> None:
        if key in self.failing_keys:
            raise StoreError(self.name, f'backend unavailable for key={key}')
        await super().upsert(key, value)


def build_orchestrator(
    chain: FakeChain,
    strategy: FakeStrategy,
    tables: AppTables | None = None,
    creators: list[str] | None = None,
    detect_batch_size: int | None = None,
    update_batch_size: int | None = None,
    timeout: float = 5.0
) -> ContractsOrchestrator:
    tables = tables or memory_tables()
    return ContractsOrchestrator(
        chain,  # type: ignore[arg-type]
        tables,
        registry=RegistryDiscovery(REGISTRY, 1, chain, tables),  # type: ignore[arg-type]
        lsp_creator=CreatorDiscovery(creators if creators is not None else [CREATOR_A], 1, chain, tables),  # type: ignore[arg-type]
        emps=ContractStateFetcher(EMP_FAMILY, strategy, tables, timeout=timeout, clock=clock),
        lsps=ContractStateFetcher(LSP_FAMILY, strategy, tables, timeout=timeout, clock=clock),
        erc20s=Erc20Service(strategy, tables, timeout=timeout),
        detect_batch_size=detect_batch_size,
        update_batch_size=update_batch_size
    )
