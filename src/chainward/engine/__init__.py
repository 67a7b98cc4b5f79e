"""
Engine - the transaction lifecycle core.

- retry:     failure classification, capped exponential backoff, retry loop
- events:    typed lifecycle events and per-send callbacks
- ledger:    bounded, observable history of every submission
- submitter: estimate, broadcast, confirm and retry a transaction
"""
