"""
Usage ledger.

Ledger accounts, transactions and entries; balance aggregation; credit
application; ledger commands and usage ingestion.
"""
