"""
Core modules for xint-guard.

This package contains the budget ledger, response cache, request gateway,
watch poller and webhook dispatcher.
"""
