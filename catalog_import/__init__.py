"""
Catalog import pipeline.

Recovers structured rows from messy CSV uploads, maps their columns onto the
catalog schema, and imports them in concurrent batches behind a
confidence-gated workflow.
"""
