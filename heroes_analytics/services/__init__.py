"""Heroes Analytics services.

Client side (one instance per device):
- sync_client: local Event Store, Batcher, Sync Agent and capture service

Server side (shared across many clients):
- anonymizer: rotating daily salts and anonymous subject hashes
- ingestion_service: validates and persists uploaded batches
- analytics_service: cached, k-anonymous rollups
- retention_service: archive-then-delete sweeps and consent purges
- audit_service: hash-chained compliance trail
"""
