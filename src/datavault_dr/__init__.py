"""
DataVault DR

Backup scheduling, redundant storage, tiered retention, integrity-verified
restore, health monitoring and failover orchestration.
"""

__version__ = "0.1.0"
