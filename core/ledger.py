"""Wiring for one organization's ledger: store, blobs, activity log and services."""

import logging
from dataclasses import dataclass

from clients.blob_client import BlobGatewayClient, BlobStorage
from clients.store_client import StoreClient
from clients.valkey_store import ValkeyStore
from clients.vault_client import get_blob_gateway_config, get_valkey_url
from core.audit import ActivityLogger
from core.config import LedgerConfig
from core.services.client_service import ClientService
from core.services.invoice_service import InvoiceService

logger = logging.getLogger(__name__)


@dataclass
class Ledger:
    """Everything a caller needs to work with one organization's invoices."""

    organization_id: str
    config: LedgerConfig
    store: StoreClient
    blobs: BlobStorage
    audit: ActivityLogger
    invoices: InvoiceService
    clients: ClientService

    async def close(self) -> None:
        await self.store.close()


def build_ledger(
    organization_id: str,
    store: StoreClient,
    blobs: BlobStorage,
    config: LedgerConfig | None = None,
) -> Ledger:
    """Assemble services over an existing store and blob storage."""
    config = config or LedgerConfig()
    audit = ActivityLogger(store, organization_id)
    invoices = InvoiceService(
        store,
        audit,
        blobs,
        config,
        collection_path=f"organizations/{organization_id}/invoices",
    )
    clients = ClientService(
        store,
        audit,
        config,
        collection_path=f"organizations/{organization_id}/clients",
        invoice_collection_path=invoices.collection_path,
    )
    return Ledger(organization_id, config, store, blobs, audit, invoices, clients)


async def open_ledger(organization_id: str, config: LedgerConfig | None = None) -> Ledger:
    """
    Connect to Valkey and the blob gateway using secrets from Vault.

    Raises:
        PermissionError: Vault denied access to a secret
        TransientStoreError: Valkey is unreachable
    """
    config = config or LedgerConfig()
    store = await ValkeyStore.connect(get_valkey_url(), timeout_seconds=config.operation_timeout_seconds)
    blobs = BlobGatewayClient(**get_blob_gateway_config())
    logger.info(f"Ledger opened for organization {organization_id}")
    return build_ledger(organization_id, store, blobs, config)
