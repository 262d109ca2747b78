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
from services.synchronizer.models import EMP_FAMILY, DiscoveryResult, Family

LOGGER = logging.getLogger('contractsync.registry')

NEW_CONTRACT_REGISTERED_TOPIC = event_topic('NewContractRegistered(address,address,address[])')


class RegistryDiscovery:
    def __init__(
        self,
        registry_address: str,
        network: int,
        chain: ChainClient,
        tables: AppTables,
        start_block: int = 0,
        log_block_range: int = DEFAULT_LOG_BLOCK_RANGE,
        family: Family = EMP_FAMILY
    ) -> None:
        self.registry_address = Web3.to_checksum_address(registry_address)
        self.network = network
        self.chain = chain
        self.tables = tables
        self.start_block = start_block
        self.log_block_range = log_block_range
        self.family = family

    @property
    def source(self) -> str:
        return f'registry:{self.registry_address}'

    async def sync(self, to_block: int | None = None) -> DiscoveryResult:
        cursors = self.tables.discovery_cursors
        registered = self.tables.by_name(self.family.registered_table)
        try:
            if to_block is None:
                to_block = await self.chain.block_number()
            from_block = await read_cursor(cursors, self.source, self.start_block)
            result = DiscoveryResult(family=self.family.name, to_block=to_block)
            if from_block > to_block:
                return result

            logs = await scan_logs(
                self.chain,
                self.registry_address,
                NEW_CONTRACT_REGISTERED_TOPIC,
                from_block,
                to_block,
                self.log_block_range
            )
            contracts = [registered_from_log(log, self.family.name, self.source) for log in logs]
            result.discovered = await record_contracts(registered, contracts)
            await write_cursor(cursors, self.source, to_block)
        except Exception as exc:  # noqa: BLE001
            raise DiscoveryError(self.family.name, f'{self.source} network={self.network}: {exc}') from exc

        LOGGER.info(
            'registry synced network=%s registry=%s from_block=%s to_block=%s new=%s',
            self.network,
            self.registry_address,
            from_block,
            to_block,
            result.discovered
        )
        return result
