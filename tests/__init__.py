"""CareSync Test Suite.

Offline-first sync for clinical records

This test suite covers:
- Durability of local writes and their sync jobs
- Retry, dead-lettering and pause on expired credentials
- Reconciliation with superseded-version retention
- Encryption of stored payloads
"""
