"""
Ledger Kernel

The transactional core of the general ledger:
- Double-entry journal lifecycle with balanced posting
- Append-only ledger postings with cached period balances
- Fiscal period state machine (open / closed / locked)
- Chart of accounts registry
"""

__version__ = "0.1.0"
