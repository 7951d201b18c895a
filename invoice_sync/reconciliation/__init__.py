"""Reconciliation: replay chain logs the webhooks missed."""
