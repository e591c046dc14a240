"""
Core modules for the AI request orchestrator.

This package contains request normalization, provider routing, the response
cache, the dispatch queue, cost guardrails and the usage ledger.
"""
