"""Batch orchestration: chunking, per-chunk processing, merge and reconciliation."""
