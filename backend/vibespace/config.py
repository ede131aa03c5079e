# backend/vibespace/config.py
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # Database
    database_url: str = "postgresql://vibespace:vibespace@db:5432/vibespace"

    # Redis (dramatiq broker + progress pub/sub)
    redis_url: str = "redis://redis:6379/0"

    # Used to derive the Fernet key for stored hypervisor credentials
    secret_key: str = "change-me-in-production"

    # === Container backend ===
    container_backend: str = "proxmox"

    # === Proxmox connection ===
    # Persisted settings (app_settings table) override these at runtime
    proxmox_host: Optional[str] = None
    proxmox_port: int = 8006
    proxmox_token_id: Optional[str] = None  # e.g. "root@pam!vibespace"
    proxmox_token_secret: Optional[str] = None
    proxmox_node: Optional[str] = None

    # === Proxmox defaults ===
    proxmox_storage: str = "local-lvm"
    proxmox_bridge: str = "vmbr0"
    proxmox_vlan_tag: Optional[int] = None
    proxmox_memory_mb: int = 2048
    proxmox_cores: int = 2
    proxmox_disk_size_gb: int = 50
    proxmox_vmid_min: int = 100
    proxmox_vmid_max: int = 999999

    # === SSH ===
    proxmox_ssh_user: str = "root"  # user on the hypervisor host (pct exec)
    proxmox_ssh_private_key_path: Optional[str] = None
    ssh_connect_timeout: int = 30

    # Unprivileged login user created inside every template
    workspace_user: str = "vibe"

    # === Timeouts (seconds) ===
    proxmox_http_timeout: int = 30  # per request to the Proxmox REST API
    task_timeout: int = 120

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
