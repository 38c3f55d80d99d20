# Infrastructure clients
from clients.vault_client import (
    VaultClient,
    VaultError,
    get_valkey_url,
    get_blob_gateway_config,
)
from clients.store_client import (
    StoreClient,
    StoreResult,
    Write,
    StoreError,
    TransientStoreError,
    StoreTimeoutError,
    StorePermissionError,
)
from clients.memory_store import InMemoryStore
from clients.valkey_store import ValkeyStore
from clients.blob_client import (
    BlobStorage,
    BlobStorageError,
    BlobGatewayClient,
    InMemoryBlobStorage,
    StoredBlob,
)
