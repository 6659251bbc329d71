"""Spend compliance kernel: domain types, persistence, errors, logging."""
