"""Integration tests for the federation broker.

These tests require a running broker on a host with a managed identity.

Run with:
    pytest tests/integration/ -v -m integration
"""
