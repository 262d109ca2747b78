from __future__ import annotations

import logging

from web3 import Web3

from services.common.chain import ChainClient, event_topic
from services.common.errors import DiscoveryError
from services.common.tables import AppTables
from services.synchronizer.discovery import (
    DEFAULT_LOG_BLOCK_RANGE,
    read_cursor,
    record_contracts,
    registered_from_log,
    scan_logs,
    write_cursor
)
from services.synchronizer.models import LSP_FAMILY, DiscoveryResult, Family

LOGGER = logging.getLogger('contractsync.creators')

CREATED_LONG_SHORT_PAIR_TOPIC = event_topic('CreatedLongShortPair(address,address,address,address)')


class CreatorDiscovery:
    def __init__(
        self,
        creator_addresses: list[str],
        network: int,
        chain: ChainClient,
        tables: AppTables,
        start_block: int = 0,
        log_block_range: int = DEFAULT_LOG_BLOCK_RANGE,
        family: Family = LSP_FAMILY
    ) -> None:
        self.creator_addresses = [Web3.to_checksum_address(a) for a in creator_addresses]
        self.network = network
        self.chain = chain
        self.tables = tables
        self.start_block = start_block
        self.log_block_range = log_block_range
        self.family = family

    async def sync(self, to_block: int | None = None) -> DiscoveryResult:
        try:
            if to_block is None:
                to_block = await self.chain.block_number()
        except Exception as exc:  # noqa: BLE001
            raise DiscoveryError(self.family.name, f'head block unavailable: {exc}') from exc

        result = DiscoveryResult(family=self.family.name, to_block=to_block)
        for creator in self.creator_addresses:
            try:
                result.discovered += await self._sync_creator(creator, to_block)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning('creator sync failed network=%s creator=%s: %s', self.network, creator, exc)
                result.failed_sources[f'creator:{creator}'] = str(exc)

        if self.creator_addresses and len(result.failed_sources) == len(self.creator_addresses):
            raise DiscoveryError(self.family.name, f'all {len(self.creator_addresses)} creators failed')
        return result

    async def _sync_creator(self, creator: str, to_block: int) -> int:
        source = f'creator:{creator}'
        cursors = self.tables.discovery_cursors
        from_block = await read_cursor(cursors, source, self.start_block)
        if from_block > to_block:
            return 0

        logs = await scan_logs(
            self.chain,
            creator,
            CREATED_LONG_SHORT_PAIR_TOPIC,
            from_block,
            to_block,
            self.log_block_range
        )
        contracts = [registered_from_log(log, self.family.name, source) for log in logs]
        discovered = await record_contracts(self.tables.by_name(self.family.registered_table), contracts)
        await write_cursor(cursors, source, to_block)

        LOGGER.info(
            'creator synced network=%s creator=%s from_block=%s to_block=%s new=%s',
            self.network,
            creator,
            from_block,
            to_block,
            discovered
        )
        return discovered
