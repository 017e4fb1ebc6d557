"""Phased infrastructure orchestrator for a Proxmox VE homelab."""

__version__ = "0.3.0"
