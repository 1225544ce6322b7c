"""Tests for the EV charger policy engine"""
