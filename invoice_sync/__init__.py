"""Invoice lifecycle synchronizer: on-chain events to invoice state.

Subpackages:
    webhooks        provider ingress: signature check, normalization, routing, queue
    lifecycle       state machine, lifecycle records, applied-event ledger, stores
    reconciliation  chain reader + backfill runner that replays missed events
"""

__version__ = "0.1.0"
