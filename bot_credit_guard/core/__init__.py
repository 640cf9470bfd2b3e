"""
Core modules for Bot Credit Guard.

This package contains the credit ledger, quota enforcement, usage
accounting, bot accounts and credit purchases.
"""
