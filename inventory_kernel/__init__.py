"""
Inventory Kernel

Device registry with an append-only assignment ledger:
- One device entity parameterized by kind
- Status derived from holder, handover document and broken flag
- Atomic assign / revoke / broken / handover transitions
- Idempotent ledger reconciliation
"""

__version__ = "0.1.0"
