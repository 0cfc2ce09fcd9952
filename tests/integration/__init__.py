"""
Integration tests for livepartition.

These tests require a PostgreSQL instance provisioned with testcontainers
(Docker must be running). They are skipped automatically when it is not
available.

Run integration tests:
    pytest tests/integration/ -v

Skip integration tests:
    pytest tests/ -v -m "not integration"
"""
