from __future__ import annotations


class SyncError(Exception):
    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ConfigError(SyncError):
    pass


class DiscoveryError(SyncError):
    def __init__(self, family: str, detail: str) -> None:
        super().__init__(f'{family} discovery failed: {detail}')
        self.family = family


class CallError(SyncError):
    def __init__(self, address: str, method: str, detail: str) -> None:
        super().__init__(f'{method} on {address}: {detail}')
        self.address = address
        self.method = method


class StoreError(SyncError):
    def __init__(self, table: str, detail: str) -> None:
        super().__init__(f'table={table}: {detail}')
        self.table = table
