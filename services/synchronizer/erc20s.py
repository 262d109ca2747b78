from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from services.common.chain import CallStrategy
from services.common.errors import StoreError
from services.common.tables import AppTables
from services.synchronizer.models import ADDRESS_SET_TABLES, ERC20_FIELDS, UpdateReport, jsonable
from services.synchronizer.state import DEFAULT_BATCH_SIZE, DEFAULT_CALL_TIMEOUT_SECONDS, chunked, fetch_batch

LOGGER = logging.getLogger('contractsync.erc20s')


class Erc20Service:
    """Token metadata for the collateral/synthetic/long/short addresses referenced by contract state."""

    def __init__(
        self,
        strategy: CallStrategy,
        tables: AppTables,
        timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS
    ) -> None:
        self.strategy = strategy
        self.tables = tables
        self.timeout = timeout

    async def unknown_addresses(self) -> set[str]:
        referenced: set[str] = set()
        for table_name in ADDRESS_SET_TABLES:
            referenced.update(key for key, _ in await self.tables.by_name(table_name).query())
        known = {key for key, _ in await self.tables.erc20s.query()}
        return referenced - known

    async def update(
        self,
        addresses: Iterable[str],
        batch_size: int | None = None,
        block_number: int | None = None
    ) -> UpdateReport:
        report = UpdateReport(family='erc20')
        for batch in chunked(sorted(set(addresses)), batch_size or DEFAULT_BATCH_SIZE):
            report.batches += 1
            report.processed += len(batch)
            fetched = await fetch_batch(self.strategy, ERC20_FIELDS, batch, self.timeout, report)
            items = list(fetched.items())
            for index, (address, fields) in enumerate(items):
                row: dict[str, Any] = {'address': address, 'last_updated_block': block_number}
                row.update({name: jsonable(value) for name, value in fields.items()})
                try:
                    await self.tables.erc20s.upsert(address, row)
                except StoreError as exc:
                    LOGGER.error('erc20 store failed, aborting batch address=%s: %s', address, exc)
                    for remaining, _ in items[index:]:
                        report.failures[remaining] = exc.detail
                    break
                report.updated += 1

        LOGGER.info(
            'erc20 metadata updated tokens=%s updated=%s failures=%s',
            report.processed,
            report.updated,
            len(report.failures)
        )
        return report
