"""Core module - the CRM <-> ERP synchronization engine.

This module contains the sync data models, record conversion, mapping and
status stores, retry classification and the sync orchestration. It is
intentionally ERP-agnostic.

ERP-specific logic (HTTP clients, sandbox) belongs in /connectors/.
"""

__version__ = "1.0.0"
