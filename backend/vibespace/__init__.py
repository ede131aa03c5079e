# backend/vibespace/__init__.py
"""Proxmox LXC workspace and template orchestration."""
