"""Mailbox ingestion, classification and quota-aware processing."""
