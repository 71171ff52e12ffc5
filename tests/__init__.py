"""
Payments Service Test Suite

This package contains all tests for the payments service including:
- Unit tests for phone normalization and provider adapters
- Initiation tests against a fake provider
- Callback reconciliation and pending sweep tests
- HTTP endpoint tests
"""
