"""Governance and release-orchestration control plane for chat topics."""

__version__ = "0.4.0"
