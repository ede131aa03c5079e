# backend/vibespace/services/settings_service.py
"""
Persisted settings backed by the ``app_settings`` key-value table.

Hypervisor credentials are stored Fernet-encrypted with a key derived from
``Settings.secret_key``.
"""
import base64
import hashlib
import logging
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from vibespace.config import Settings, get_settings
from vibespace.models.app_setting import AppSetting
from vibespace.schemas.proxmox import (
    ConnectionSettings,
    ProxmoxRuntimeConfig,
    ProxmoxSettings,
    VmidConfig,
)
from vibespace.services.errors import ConfigurationError

logger = logging.getLogger(__name__)

VMID_CONFIG_KEY = "proxmox.vmidConfig"
PROXMOX_SETTINGS_KEY = "proxmox.settings"
CONNECTION_KEY = "proxmox.connection"

DEFAULT_STARTING_VMID = 500


class SettingsService:
    """Typed accessors over the key-value settings store."""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self._encryption_key: Optional[bytes] = None

    # --- Raw key-value access ---

    def get(self, key: str, default: Any = None) -> Any:
        row = self.db.query(AppSetting).filter(AppSetting.key == key).first()
        return row.value if row is not None else default

    def set(self, key: str, value: Any, description: Optional[str] = None) -> None:
        row = self.db.query(AppSetting).filter(AppSetting.key == key).first()
        if row is None:
            row = AppSetting(key=key, value=value, description=description)
            self.db.add(row)
        else:
            row.value = value
            if description is not None:
                row.description = description
        self.db.commit()

    def delete(self, key: str) -> bool:
        deleted = self.db.query(AppSetting).filter(AppSetting.key == key).delete()
        self.db.commit()
        return deleted > 0

    # --- Encryption ---

    def _get_encryption_key(self) -> bytes:
        if self._encryption_key is None:
            key_hash = hashlib.sha256(self.settings.secret_key.encode()).digest()
            self._encryption_key = base64.urlsafe_b64encode(key_hash)
        return self._encryption_key

    def _encrypt(self, value: str) -> str:
        return Fernet(self._get_encryption_key()).encrypt(value.encode()).decode()

    def _decrypt(self, token: str) -> str:
        try:
            return Fernet(self._get_encryption_key()).decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise ConfigurationError(
                "Stored Proxmox credentials cannot be decrypted; was secret_key changed?"
            ) from e

    # --- VMID range ---

    def get_vmid_config(self) -> VmidConfig:
        stored = self.get(VMID_CONFIG_KEY)
        if not stored:
            return VmidConfig(starting_vmid=DEFAULT_STARTING_VMID)
        return VmidConfig(**stored)

    def save_vmid_config(self, config: VmidConfig) -> None:
        self.set(VMID_CONFIG_KEY, config.model_dump())

    # --- Deployment defaults ---

    def get_proxmox_settings(self) -> ProxmoxSettings:
        return ProxmoxSettings(**(self.get(PROXMOX_SETTINGS_KEY) or {}))

    def save_proxmox_settings(self, proxmox_settings: ProxmoxSettings) -> None:
        self.set(PROXMOX_SETTINGS_KEY, proxmox_settings.model_dump(exclude_none=True))

    # --- Connection credentials ---

    def get_connection_settings(self) -> Optional[ConnectionSettings]:
        stored = self.get(CONNECTION_KEY)
        if not stored:
            return None
        return ConnectionSettings(
            host=stored["host"],
            port=stored.get("port", 8006),
            token_id=stored["token_id"],
            token_secret=self._decrypt(stored["token_secret"]),
            node=stored["node"],
        )

    def save_connection_settings(self, connection: ConnectionSettings) -> None:
        data = connection.model_dump()
        data["token_secret"] = self._encrypt(connection.token_secret)
        self.set(CONNECTION_KEY, data, description="Proxmox API connection (token secret encrypted)")
        logger.info(f"Saved Proxmox connection settings for {connection.host}")

    def clear_connection_settings(self) -> bool:
        return self.delete(CONNECTION_KEY)

    # --- Effective runtime configuration ---

    def get_runtime_config(self) -> ProxmoxRuntimeConfig:
        """Environment defaults overlaid with whatever is stored in the database."""
        s = self.settings
        config = ProxmoxRuntimeConfig(
            host=s.proxmox_host,
            port=s.proxmox_port,
            token_id=s.proxmox_token_id,
            token_secret=s.proxmox_token_secret,
            node=s.proxmox_node,
            storage=s.proxmox_storage,
            bridge=s.proxmox_bridge,
            vlan_tag=s.proxmox_vlan_tag,
            memory_mb=s.proxmox_memory_mb,
            cores=s.proxmox_cores,
            disk_size_gb=s.proxmox_disk_size_gb,
            vmid_min=s.proxmox_vmid_min,
            vmid_max=s.proxmox_vmid_max,
            ssh_user=s.proxmox_ssh_user,
            ssh_private_key_path=s.proxmox_ssh_private_key_path,
            workspace_user=s.workspace_user,
        )

        updates = {}
        if connection := self.get_connection_settings():
            updates.update(connection.model_dump())

        stored = self.get_proxmox_settings()
        if stored.default_storage:
            updates["storage"] = stored.default_storage
        if stored.default_memory:
            updates["memory_mb"] = stored.default_memory
        if stored.default_cpu_cores:
            updates["cores"] = stored.default_cpu_cores
        if stored.default_disk_size:
            updates["disk_size_gb"] = stored.default_disk_size
        if stored.vlan_tag is not None:
            updates["vlan_tag"] = stored.vlan_tag

        return config.model_copy(update=updates)
