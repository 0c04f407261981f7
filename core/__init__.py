"""Core (UI-agnostic) dashboard logic.

This package contains:
- sheet ingestion (CSV export -> Unit Records per province)
- column layout descriptors for the province sheet variants
- the refresh orchestrator publishing immutable snapshots
- page compute functions (JSON-serializable payloads)
"""
