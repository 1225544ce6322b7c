"""
Unit Tests Package

Rules, records, commands and infrastructure adapters tested in isolation;
Redis and the service are mocked where they appear.
"""
