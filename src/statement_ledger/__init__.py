"""
Statement Ledger – bank statement to accounting ledger conversion.

Splits statement documents into chunks, sends each chunk to an LLM through a
waterfall of models and API keys, repairs the returned JSON and merges the
per-chunk fragments into one reconciled ledger.
"""

__version__ = "1.2.7"

__all__ = [
    "cli",
    "config",
    "domain",
    "errors",
    "frontend",
    "llm",
    "logging",
    "orchestrator",
    "paths",
]
