"""
Core modules for the shop assistant engine.

This package contains strategy selection, commerce gating, budget
governance, prompt composition, resilient invocation, tool calling and
the usage ledger.
"""
