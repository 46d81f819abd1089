"""Process wiring: settings -> DuckDB connection, ledger client and LendingService."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

from lendcore.config import Settings
from lendcore.ledger.xrpl import HttpSigner, XrplJsonRpcClient
from lendcore.lending.service import LendingService
from lendcore.storage.db import get_connection, init_schema

log = structlog.get_logger(__name__)


@asynccontextmanager
async def open_service(settings: Settings, sync_markets: bool = True) -> AsyncIterator[LendingService]:
    """Yield a LendingService backed by the configured database and ledger; close everything after."""
    conn = get_connection(settings.db_path)
    init_schema(conn)
    signer = HttpSigner(settings.signer_url, timeout_sec=settings.request_timeout_sec)
    ledger = XrplJsonRpcClient(
        settings.rpc_url,
        signer,
        settings.custody_address,
        request_timeout_sec=settings.request_timeout_sec,
        confirm_timeout_sec=settings.confirm_timeout_sec,
        poll_interval_sec=settings.poll_interval_sec,
    )
    service: LendingService | None = None
    try:
        service = LendingService.from_settings(settings, conn, ledger)
        if sync_markets:
            service.registry.sync(settings.market_configs)
        log.info("service_started", db_path=settings.db_path, rpc_url=settings.rpc_url)
        yield service
    finally:
        if service is not None:
            await service.guard.drain()
        await ledger.close()
        await signer.close()
        conn.close()
