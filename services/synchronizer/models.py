from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from services.common.chain import Method

EMP = 'emp'
LSP = 'lsp'

ACTIVE = 'active'
EXPIRED = 'expired'

# ContractState enum shared by both families: Open, ExpiredPriceRequested, ExpiredPriceReceived
CONTRACT_STATE_OPEN = 0

MAX_SAFE_INT = 2 ** 53

EMP_FIELDS = (
    Method('expirationTimestamp', ('uint256',)),
    Method('contractState', ('uint8',)),
    Method('collateralCurrency', ('address',)),
    Method('tokenCurrency', ('address',)),
    Method('priceIdentifier', ('bytes32',), required=False),
    Method('collateralRequirement', ('uint256',), required=False),
    Method('minSponsorTokens', ('uint256',), required=False),
    Method('totalTokensOutstanding', ('uint256',), required=False),
    Method('rawTotalPositionCollateral', ('uint256',), required=False),
    Method('cumulativeFeeMultiplier', ('uint256',), required=False),
    Method('expiryPrice', ('uint256',), required=False),
    Method('withdrawalLiveness', ('uint256',), required=False),
    Method('liquidationLiveness', ('uint256',), required=False)
)

LSP_FIELDS = (
    Method('expirationTimestamp', ('uint64',)),
    Method('contractState', ('uint8',)),
    Method('collateralToken', ('address',)),
    Method('longToken', ('address',)),
    Method('shortToken', ('address',)),
    Method('pairName', ('string',), required=False),
    Method('collateralPerPair', ('uint256',), required=False),
    Method('priceIdentifier', ('bytes32',), required=False),
    Method('financialProductLibrary', ('address',), required=False),
    Method('customAncillaryData', ('bytes',), required=False),
    Method('proposerReward', ('uint256',), required=False),
    Method('expiryPrice', ('int256',), required=False),
    Method('expiryPercentLong', ('uint256',), required=False)
)

ERC20_FIELDS = (
    Method('decimals', ('uint8',)),
    Method('symbol', ('string',), required=False),
    Method('name', ('string',), required=False),
    Method('totalSupply', ('uint256',), required=False)
)


def emp_is_expired(fields: dict[str, Any], now: int) -> bool:
    if int(fields['contractState']) != CONTRACT_STATE_OPEN:
        return True
    return int(fields['expirationTimestamp']) <= now


def lsp_is_expired(fields: dict[str, Any], now: int) -> bool:
    # an lsp past expiration is only settleable, never re-opened
    if int(fields['expirationTimestamp']) <= now:
        return True
    return int(fields['contractState']) != CONTRACT_STATE_OPEN


@dataclass(frozen=True)
class Family:
    name: str
    fields: tuple[Method, ...]
    registered_table: str
    active_table: str
    expired_table: str
    # (state field, address-set table) pairs for auxiliary token addresses
    address_sets: tuple[tuple[str, str], ...]
    is_expired: Callable[[dict[str, Any], int], bool]

    def partition_table(self, partition: str) -> str:
        return self.expired_table if partition == EXPIRED else self.active_table


EMP_FAMILY = Family(
    name=EMP,
    fields=EMP_FIELDS,
    registered_table='registered_emps',
    active_table='emps_active',
    expired_table='emps_expired',
    address_sets=(
        ('collateralCurrency', 'collateral_addresses'),
        ('tokenCurrency', 'synthetic_addresses')
    ),
    is_expired=emp_is_expired
)

LSP_FAMILY = Family(
    name=LSP,
    fields=LSP_FIELDS,
    registered_table='registered_lsps',
    active_table='lsps_active',
    expired_table='lsps_expired',
    address_sets=(
        ('collateralToken', 'collateral_addresses'),
        ('longToken', 'long_addresses'),
        ('shortToken', 'short_addresses')
    ),
    is_expired=lsp_is_expired
)

ADDRESS_SET_TABLES = ('collateral_addresses', 'synthetic_addresses', 'long_addresses', 'short_addresses')


def jsonable(value: Any) -> Any:
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        return value if abs(value) < MAX_SAFE_INT else str(value)
    if isinstance(value, (tuple, list)):
        return [jsonable(item) for item in value]
    return value


@dataclass
class RegisteredContract:
    address: str
    family: str
    block_number: int
    tx_hash: str
    source: str

    def to_row(self) -> dict[str, Any]:
        return {
            'address': self.address,
            'family': self.family,
            'block_number': self.block_number,
            'tx_hash': self.tx_hash,
            'source': self.source
        }


@dataclass
class DiscoveryResult:
    family: str
    to_block: int
    discovered: int = 0
    failed_sources: dict[str, str] = field(default_factory=dict)


@dataclass
class UpdateReport:
    family: str
    processed: int = 0
    updated: int = 0
    expired: int = 0
    batches: int = 0
    failures: dict[str, str] = field(default_factory=dict)

    def merge(self, other: UpdateReport) -> None:
        self.processed += other.processed
        self.updated += other.updated
        self.expired += other.expired
        self.batches += other.batches
        self.failures.update(other.failures)


@dataclass
class RunSummary:
    run_started_at: str
    run_finished_at: str = ''
    duration_ms: int = 0
    last_block_update: int | None = None
    addresses_processed: int = 0
    failures: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    reports: dict[str, UpdateReport] = field(default_factory=dict)
    token_failures: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    def to_app_stats(self) -> dict[str, Any]:
        return {
            'run_started_at': self.run_started_at,
            'run_finished_at': self.run_finished_at,
            'duration_ms': self.duration_ms,
            'last_block_update': self.last_block_update,
            'addresses_processed': self.addresses_processed,
            'failures': len(self.failures),
            'failed_addresses': sorted(self.failures),
            'errors': dict(self.errors),
            'token_failures': len(self.token_failures),
            'families': {
                name: {
                    'processed': report.processed,
                    'updated': report.updated,
                    'expired': report.expired,
                    'batches': report.batches,
                    'failures': len(report.failures)
                }
                for name, report in self.reports.items()
            },
            'error': self.error
        }
