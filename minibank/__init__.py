"""
Minibank Core

Account ledger, dual-control approval workflow, atomic transfers and
sequence numbering for a small retail bank, with proper financial math
using Decimal and a hash-chained audit trail.
"""

__version__ = "1.0.0"
