from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone

from prometheus_client import Counter

from services.common.chain import ChainClient
from services.common.errors import DiscoveryError, StoreError
from services.common.profile import Profile
from services.common.tables import AppTables
from services.synchronizer.creators import CreatorDiscovery
from services.synchronizer.erc20s import Erc20Service
from services.synchronizer.models import DiscoveryResult, RunSummary, UpdateReport
from services.synchronizer.registry import RegistryDiscovery
from services.synchronizer.state import ContractStateFetcher

LOGGER = logging.getLogger('contractsync.contracts')

APP_STATS_KEY = 'latest'

PASSES_TOTAL = Counter(
    'contractsync_passes_total',
    'Orchestrator passes by outcome',
    ['outcome']
)


class ContractsOrchestrator:
    def __init__(
        self,
        chain: ChainClient,
        tables: AppTables,
        registry: RegistryDiscovery,
        lsp_creator: CreatorDiscovery,
        emps: ContractStateFetcher,
        lsps: ContractStateFetcher,
        erc20s: Erc20Service,
        profile: Callable[[str], Callable[[], float]] | None = None,
        detect_batch_size: int | None = None,
        update_batch_size: int | None = None,
        confirmation_depth: int = 0
    ) -> None:
        self.chain = chain
        self.tables = tables
        self.registry = registry
        self.lsp_creator = lsp_creator
        self.emps = emps
        self.lsps = lsps
        self.erc20s = erc20s
        self.profile = profile or Profile()
        self.detect_batch_size = detect_batch_size
        self.update_batch_size = update_batch_size
        self.confirmation_depth = confirmation_depth

    async def run(self) -> RunSummary:
        started = time.perf_counter()
        summary = RunSummary(run_started_at=datetime.now(timezone.utc).isoformat())
        end_pass = self.profile('pass')

        try:
            head = await self.chain.block_number()
        except Exception as exc:  # noqa: BLE001
            summary.error = f'head block unavailable: {exc}'
            await self._finish(summary, started, end_pass, outcome='failed')
            raise DiscoveryError('all', summary.error) from exc

        to_block = max(0, head - self.confirmation_depth)
        summary.last_block_update = to_block

        pipelines = [(self.registry, self.emps), (self.lsp_creator, self.lsps)]

        end = self.profile('discovery')
        discovered = await asyncio.gather(
            *[discovery.sync(to_block) for discovery, _ in pipelines],
            return_exceptions=True
        )
        end()

        ready: list[ContractStateFetcher] = []
        for (_, fetcher), result in zip(pipelines, discovered):
            if isinstance(result, DiscoveryResult):
                ready.append(fetcher)
                for source, detail in result.failed_sources.items():
                    summary.errors[source] = detail
                continue
            LOGGER.error('discovery failed family=%s: %s', fetcher.family.name, result)
            summary.errors[fetcher.family.name] = str(result)

        if not ready:
            summary.error = 'discovery failed for every family'
            await self._finish(summary, started, end_pass, outcome='failed')
            raise DiscoveryError('all', '; '.join(f'{k}: {v}' for k, v in summary.errors.items()))

        end = self.profile('update')
        updated = await asyncio.gather(
            *[self._update_family(fetcher, to_block) for fetcher in ready],
            return_exceptions=True
        )
        end()

        for fetcher, report in zip(ready, updated):
            if isinstance(report, UpdateReport):
                summary.reports[fetcher.family.name] = report
                summary.addresses_processed += report.processed
                summary.failures.update(report.failures)
                continue
            LOGGER.error('state update failed family=%s: %s', fetcher.family.name, report)
            summary.errors[fetcher.family.name] = str(report)

        end = self.profile('erc20s')
        try:
            tokens = await self.erc20s.update(
                await self.erc20s.unknown_addresses(),
                self.detect_batch_size,
                to_block
            )
            summary.token_failures.update(tokens.failures)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception('erc20 metadata update failed')
            summary.errors['erc20'] = str(exc)
        end()

        await self._finish(summary, started, end_pass, outcome='partial' if summary.failures else 'ok')
        return summary

    async def _update_family(self, fetcher: ContractStateFetcher, to_block: int) -> UpdateReport:
        family = fetcher.family
        known = [key for key, _ in await self.tables.by_name(family.registered_table).query()]
        active = {key for key, _ in await self.tables.by_name(family.active_table).query()}
        expired = {key for key, _ in await self.tables.by_name(family.expired_table).query()}

        # expired rows are final; only first-seen and active contracts are read
        new = [address for address in known if address not in active and address not in expired]
        refresh = [address for address in known if address in active]

        report = await fetcher.update(new, self.detect_batch_size, to_block)
        report.merge(await fetcher.update(refresh, self.update_batch_size, to_block))
        return report

    async def _finish(
        self,
        summary: RunSummary,
        started: float,
        end_pass: Callable[[], float],
        outcome: str
    ) -> None:
        end_pass()
        summary.run_finished_at = datetime.now(timezone.utc).isoformat()
        summary.duration_ms = int((time.perf_counter() - started) * 1000)
        PASSES_TOTAL.labels(outcome=outcome).inc()

        try:
            await self.tables.app_stats.upsert(APP_STATS_KEY, summary.to_app_stats())
        except StoreError as exc:
            LOGGER.error('app stats write failed: %s', exc)

        LOGGER.info(
            'pass finished outcome=%s block=%s addresses=%s failures=%s duration_ms=%s',
            outcome,
            summary.last_block_update,
            summary.addresses_processed,
            len(summary.failures),
            summary.duration_ms
        )
