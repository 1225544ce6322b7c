"""Presentation layer: command line host."""
