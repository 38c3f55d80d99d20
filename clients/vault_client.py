"""
Secrets for the ledger backends, read from HashiCorp Vault.

AppRole login with credentials from the environment. Every secret lives
under the 'invoicereview/' KV v2 mount path; callers never see other paths.
A whole secret is read in one request and cached per process, so wiring a
ledger costs one Vault round trip per backend.
"""

import os
import logging
from typing import Dict

import hvac
from hvac.exceptions import InvalidPath, Unauthorized, Forbidden

logger = logging.getLogger(__name__)

_SECRET_PREFIX = "invoicereview"

_vault_client_instance: "VaultClient | None" = None
# Secret name -> field map, filled on first use
_secret_cache: Dict[str, Dict[str, str]] = {}

BLOB_GATEWAY_FIELDS = ("gateway_url", "api_key", "hmac_secret")


def _ensure_vault_client() -> "VaultClient":
    global _vault_client_instance
    if _vault_client_instance is None:
        _vault_client_instance = VaultClient()
    return _vault_client_instance


class VaultError(Exception):
    """Vault answered with something that is not a KV v2 secret."""


class VaultClient:
    """
    AppRole-authenticated reader for the ledger's secrets.

    Usage:
        vault = VaultClient()               # VAULT_ADDR, VAULT_ROLE_ID, VAULT_SECRET_ID
        url = vault.get_secret("valkey", "url")
        blobs = vault.read_secret("blobs")  # {"gateway_url": ..., "api_key": ..., ...}
    """

    def __init__(
        self,
        vault_addr: str | None = None,
        vault_namespace: str | None = None,
        role_id: str | None = None,
        secret_id: str | None = None,
    ):
        """
        Log in right away; raise instead of limping along without secrets.

        Raises:
            ValueError: Address or AppRole credentials missing
            PermissionError: Login rejected
        """
        self.vault_addr = vault_addr or os.getenv("VAULT_ADDR")
        self.vault_namespace = vault_namespace or os.getenv("VAULT_NAMESPACE")
        self.role_id = role_id or os.getenv("VAULT_ROLE_ID")
        self.secret_id = secret_id or os.getenv("VAULT_SECRET_ID")

        if not self.vault_addr:
            raise ValueError("VAULT_ADDR environment variable is required")
        if not self.role_id or not self.secret_id:
            raise ValueError(
                "VAULT_ROLE_ID and VAULT_SECRET_ID environment variables are required"
            )

        client_kwargs = {"url": self.vault_addr}
        if self.vault_namespace:
            client_kwargs["namespace"] = self.vault_namespace
        self.client = hvac.Client(**client_kwargs)

        self._login()
        if not self.client.is_authenticated():
            raise PermissionError("Vault authentication failed")
        logger.info(f"Vault client ready: {self.vault_addr}")

    def _login(self) -> None:
        try:
            response = self.client.auth.approle.login(role_id=self.role_id, secret_id=self.secret_id)
        except (Unauthorized, Forbidden, InvalidPath) as e:
            logger.error(f"AppRole authentication failed: {e}")
            raise PermissionError(f"AppRole authentication failed: {e}") from e
        self.client.token = response["auth"]["client_token"]

    def read_secret(self, name: str) -> Dict[str, str]:
        """
        All fields of one secret.

        Args:
            name: Secret name below invoicereview/ (e.g. 'valkey', 'blobs')

        Raises:
            PermissionError: Secret missing or not readable with this role
            VaultError: Response is not shaped like a KV v2 secret
        """
        full_path = f"{_SECRET_PREFIX}/{name}"
        try:
            response = self.client.secrets.kv.v2.read_secret_version(
                path=full_path, raise_on_deleted_version=True
            )
        except InvalidPath as e:
            logger.error(f"Secret path not found: {full_path}")
            raise PermissionError(f"Secret path '{full_path}' not found in Vault") from e
        except (Unauthorized, Forbidden) as e:
            logger.error(f"Access denied to secret {full_path}: {e}")
            raise PermissionError(f"Access denied to secret '{full_path}': {e}") from e

        try:
            return dict(response["data"]["data"])
        except (KeyError, TypeError) as e:
            raise VaultError(f"Unexpected response for secret '{full_path}'") from e

    def get_secret(self, name: str, field: str) -> str:
        """
        One field of a secret.

        Raises:
            KeyError: The secret has no such field (message lists the ones it has)
            PermissionError: See read_secret
        """
        return _pick(name, self.read_secret(name), field)


def _pick(name: str, secret: Dict[str, str], field: str) -> str:
    if field not in secret:
        raise KeyError(
            f"Field '{field}' not found in secret '{_SECRET_PREFIX}/{name}'. "
            f"Available: {', '.join(secret)}"
        )
    return secret[field]


def _cached_secret(name: str) -> Dict[str, str]:
    if name not in _secret_cache:
        _secret_cache[name] = _ensure_vault_client().read_secret(name)
    return _secret_cache[name]


def get_valkey_url() -> str:
    """Connection URL of the Valkey document store."""
    return _pick("valkey", _cached_secret("valkey"), "url")


def get_blob_gateway_config() -> Dict[str, str]:
    """
    Blob gateway settings, ready to pass to BlobGatewayClient(**config).

    Returns:
        Dict with keys: gateway_url, api_key, hmac_secret
    """
    secret = _cached_secret("blobs")
    return {field: _pick("blobs", secret, field) for field in BLOB_GATEWAY_FIELDS}
