"""JSON API over a ledger session."""
