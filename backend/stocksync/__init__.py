"""Inventory deduction and reconciliation engine for multi-store food retail."""

__version__ = "1.0.0"
