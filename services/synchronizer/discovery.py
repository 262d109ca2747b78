from __future__ import annotations

import logging
from typing import Any

from services.common.chain import ChainClient, hex_prefixed, topic_to_address
from services.common.tables import Table
from services.synchronizer.models import RegisteredContract

LOGGER = logging.getLogger('contractsync.discovery')

DEFAULT_LOG_BLOCK_RANGE = 100_000


async def read_cursor(cursors: Table, source: str, start_block: int) -> int:
    row = await cursors.get(source)
    if row is None:
        return start_block
    return int(row['block_number']) + 1


async def write_cursor(cursors: Table, source: str, block_number: int) -> None:
    await cursors.upsert(source, {'source': source, 'block_number': block_number})


async def scan_logs(
    chain: ChainClient,
    address: str,
    topic: str,
    from_block: int,
    to_block: int,
    block_range: int
) -> list[Any]:
    logs: list[Any] = []
    step = max(1, block_range)
    for start in range(from_block, to_block + 1, step):
        end = min(start + step - 1, to_block)
        logs.extend(await chain.get_logs(address, topic, start, end))
    return logs


def registered_from_log(log: Any, family: str, source: str) -> RegisteredContract:
    return RegisteredContract(
        address=topic_to_address(log['topics'][1]),
        family=family,
        block_number=int(log['blockNumber']),
        tx_hash=hex_prefixed(log['transactionHash']),
        source=source
    )


async def record_contracts(table: Table, contracts: list[RegisteredContract]) -> int:
    """Upserts contracts not yet known; returns how many were new."""
    discovered = 0
    for contract in contracts:
        if await table.get(contract.address) is not None:
            continue
        await table.upsert(contract.address, contract.to_row())
        discovered += 1
    return discovered
