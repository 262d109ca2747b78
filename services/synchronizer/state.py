from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any

from prometheus_client import Counter

from services.common.chain import Call, CallStrategy, Method
from services.common.errors import CallError, StoreError
from services.common.tables import AppTables
from services.synchronizer.models import ACTIVE, EXPIRED, Family, UpdateReport, jsonable

LOGGER = logging.getLogger('contractsync.state')

DEFAULT_BATCH_SIZE = 100
DEFAULT_CALL_TIMEOUT_SECONDS = 30.0

ADDRESSES_UPDATED_TOTAL = Counter(
    'contractsync_addresses_updated_total',
    'Contract state rows written',
    ['family', 'partition']
)
ADDRESS_FAILURES_TOTAL = Counter(
    'contractsync_address_failures_total',
    'Contract addresses whose state could not be fetched or written',
    ['family']
)


def chunked(items: list[str], size: int) -> Iterable[list[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


async def fetch_batch(
    strategy: CallStrategy,
    methods: tuple[Method, ...],
    batch: list[str],
    timeout: float,
    report: UpdateReport
) -> dict[str, dict[str, Any]]:
    """Read every method of every address in one strategy call.

    A failure of the call itself fails the whole batch and returns nothing;
    an address whose required field fails is recorded and left out.
    """
    calls = [Call(address, method) for address in batch for method in methods]
    try:
        results = await asyncio.wait_for(strategy.batch_call(calls), timeout=timeout)
        if len(results) != len(calls):
            raise RuntimeError(f'call strategy returned {len(results)} results for {len(calls)} calls')
    except asyncio.TimeoutError:
        LOGGER.warning('batch call timed out family=%s size=%s timeout=%s', report.family, len(batch), timeout)
        for address in batch:
            report.failures[address] = f'batch call timed out after {timeout}s'
        return {}
    except Exception as exc:  # noqa: BLE001
        LOGGER.warning('batch call failed family=%s size=%s: %s', report.family, len(batch), exc)
        for address in batch:
            report.failures[address] = f'batch call failed: {exc}'
        return {}

    fetched: dict[str, dict[str, Any]] = {}
    width = len(methods)
    for index, address in enumerate(batch):
        fields: dict[str, Any] = {}
        for method, result in zip(methods, results[index * width:(index + 1) * width]):
            if result.success:
                fields[method.name] = result.value
            elif method.required:
                error = CallError(address, method.name, result.error or 'call failed')
                report.failures[address] = error.detail
                LOGGER.debug('address failed family=%s %s', report.family, error.detail)
                break
            else:
                fields[method.name] = None
        else:
            fetched[address] = fields
    return fetched


class ContractStateFetcher:
    def __init__(
        self,
        family: Family,
        strategy: CallStrategy,
        tables: AppTables,
        timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time
    ) -> None:
        self.family = family
        self.strategy = strategy
        self.tables = tables
        self.timeout = timeout
        self.clock = clock

    async def update(
        self,
        addresses: Iterable[str],
        batch_size: int | None = None,
        block_number: int | None = None
    ) -> UpdateReport:
        ordered = sorted(set(addresses))
        size = batch_size or DEFAULT_BATCH_SIZE
        report = UpdateReport(family=self.family.name)

        for batch in chunked(ordered, size):
            report.batches += 1
            report.processed += len(batch)
            fetched = await fetch_batch(self.strategy, self.family.fields, batch, self.timeout, report)
            await self._write_batch(fetched, block_number, report)

        if report.failures:
            ADDRESS_FAILURES_TOTAL.labels(family=self.family.name).inc(len(report.failures))
        LOGGER.info(
            'state updated family=%s addresses=%s batches=%s updated=%s expired=%s failures=%s',
            self.family.name,
            report.processed,
            report.batches,
            report.updated,
            report.expired,
            len(report.failures)
        )
        return report

    async def _write_batch(
        self,
        fetched: dict[str, dict[str, Any]],
        block_number: int | None,
        report: UpdateReport
    ) -> None:
        now = int(self.clock())
        items = list(fetched.items())
        for index, (address, fields) in enumerate(items):
            try:
                await self._write_state(address, fields, block_number, now, report)
            except StoreError as exc:
                LOGGER.error(
                    'store failed, aborting batch family=%s address=%s remaining=%s: %s',
                    self.family.name,
                    address,
                    len(items) - index,
                    exc
                )
                for failed, _ in items[index:]:
                    report.failures[failed] = exc.detail
                return

    async def _write_state(
        self,
        address: str,
        fields: dict[str, Any],
        block_number: int | None,
        now: int,
        report: UpdateReport
    ) -> None:
        active = self.tables.by_name(self.family.active_table)
        expired = self.tables.by_name(self.family.expired_table)

        previously_expired = await expired.get(address) is not None
        is_expired = previously_expired or self.family.is_expired(fields, now)
        partition = EXPIRED if is_expired else ACTIVE

        row: dict[str, Any] = {'address': address, 'family': self.family.name}
        row.update({name: jsonable(value) for name, value in fields.items()})
        row['partition'] = partition
        row['last_updated_block'] = block_number
        row['updated_at'] = datetime.now(timezone.utc).isoformat()

        target, other = (expired, active) if is_expired else (active, expired)
        await target.upsert(address, row)
        await other.delete(address)

        await self._record_address_sets(address, fields)

        report.updated += 1
        if is_expired and not previously_expired:
            report.expired += 1
        ADDRESSES_UPDATED_TOTAL.labels(family=self.family.name, partition=partition).inc()

    async def _record_address_sets(self, address: str, fields: dict[str, Any]) -> None:
        for field_name, table_name in self.family.address_sets:
            token = fields.get(field_name)
            if not token:
                continue
            table = self.tables.by_name(table_name)
            if await table.get(token) is not None:
                continue
            await table.upsert(token, {'address': token, 'family': self.family.name, 'first_seen_by': address})
