from __future__ import annotations

import logging
from dataclasses import dataclass

import asyncpg

from services.common.chain import CallStrategy, ChainClient, MulticallStrategy, SingleCallStrategy
from services.common.profile import Profile
from services.common.tables import AppTables, ensure_schema, memory_tables, postgres_tables
from services.synchronizer.config import Settings
from services.synchronizer.contracts import ContractsOrchestrator
from services.synchronizer.creators import CreatorDiscovery
from services.synchronizer.erc20s import Erc20Service
from services.synchronizer.models import EMP_FAMILY, LSP_FAMILY
from services.synchronizer.registry import RegistryDiscovery
from services.synchronizer.scheduler import Scheduler
from services.synchronizer.state import ContractStateFetcher

LOGGER = logging.getLogger('contractsync.app')


@dataclass
class Synchronizer:
    settings: Settings
    network: int
    chain: ChainClient
    tables: AppTables
    orchestrator: ContractsOrchestrator
    scheduler: Scheduler
    pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        await self.scheduler.stop()
        if self.pool is not None:
            await self.pool.close()
            self.pool = None


def build_strategy(settings: Settings, chain: ChainClient) -> CallStrategy:
    if settings.call_strategy == 'multicall':
        assert settings.multicall_address is not None
        return MulticallStrategy(chain, settings.multicall_address)
    return SingleCallStrategy(chain)


async def build_synchronizer(
    settings: Settings,
    chain: ChainClient | None = None,
    tables: AppTables | None = None,
    strategy: CallStrategy | None = None
) -> Synchronizer:
    chain = chain or ChainClient(settings.rpc_url, request_timeout=settings.call_timeout_seconds)

    pool: asyncpg.Pool | None = None
    if tables is None:
        if settings.store_backend == 'postgres':
            pool = await asyncpg.create_pool(dsn=settings.postgres_dsn, min_size=1, max_size=10)
            await ensure_schema(pool)
            tables = postgres_tables(pool)
        else:
            tables = memory_tables()

    network = settings.network_chain_id or await chain.network_id()
    strategy = strategy or build_strategy(settings, chain)
    timeout = settings.call_timeout_seconds

    registry = RegistryDiscovery(
        settings.registry_address,
        network,
        chain,
        tables,
        start_block=settings.registry_start_block,
        log_block_range=settings.log_block_range
    )
    lsp_creator = CreatorDiscovery(
        settings.lsp_creator_addresses,
        network,
        chain,
        tables,
        start_block=settings.creator_start_block,
        log_block_range=settings.log_block_range
    )
    orchestrator = ContractsOrchestrator(
        chain,
        tables,
        registry=registry,
        lsp_creator=lsp_creator,
        emps=ContractStateFetcher(EMP_FAMILY, strategy, tables, timeout=timeout),
        lsps=ContractStateFetcher(LSP_FAMILY, strategy, tables, timeout=timeout),
        erc20s=Erc20Service(strategy, tables, timeout=timeout),
        profile=Profile(settings.debug),
        detect_batch_size=settings.detect_contracts_batch_size,
        update_batch_size=settings.update_contracts_batch_size,
        confirmation_depth=settings.confirmation_depth
    )

    LOGGER.info(
        'synchronizer ready service=%s network=%s store=%s strategy=%s creators=%s',
        settings.service_name,
        network,
        settings.store_backend,
        settings.call_strategy,
        len(settings.lsp_creator_addresses)
    )
    return Synchronizer(
        settings=settings,
        network=network,
        chain=chain,
        tables=tables,
        orchestrator=orchestrator,
        scheduler=Scheduler(orchestrator.run, settings.scheduler_interval_seconds),
        pool=pool
    )
