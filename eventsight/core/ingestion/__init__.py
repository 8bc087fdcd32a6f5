"""Ingestion pipeline and its attempt ledger."""
