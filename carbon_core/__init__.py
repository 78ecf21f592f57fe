"""Core (UI-agnostic) campus emissions logic.

This package contains:
- emission record loading (CSV/XLSX -> pandas) and a paginated record source
- dimension filter normalization
- hierarchical aggregation with round-once totals
- the drill-down navigation state machine
- dashboard payload functions (JSON-serializable)
"""
