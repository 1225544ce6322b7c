"""
Integration Tests Package

These tests verify that the engine's layers work together:
1. ChargingService and ReminderSweep over the in-memory store
2. The SQLAlchemy store on SQLite
3. The command-line host end to end
"""
