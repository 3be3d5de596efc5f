"""Ledger data model and amount/date normalisation."""
