"""Blockchain webhook ingress.

Receives webhooks from Alchemy and Coinbase CDP.
Each webhook is signature-verified, normalized into canonical events,
queued per invoice, and routed to the lifecycle synchronizer.
"""
