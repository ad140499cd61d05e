"""CRM sync engine -- queue, processor, conflicts, subscriptions and timers.

Keeps local business records and deals in a remote CRM consistent in both
directions. Every sync intent becomes a prioritized queue item; bounded
drains push/pull through a RemoteSyncAdapter, divergent values become
conflicts for a human to settle, and per-owner timers plus debounced
insert notifications keep the queue moving.

Components:
- models / schemas: SQLAlchemy tables and Pydantic types
- queue_store, mapping_store, conflict_store, record_store, config_store
- adapter: RemoteSyncAdapter and its HTTP implementation
- processor: QueueProcessor (batch of 5, per-owner guard, backoff)
- subscriptions / notifications: one change channel per owner
- scheduler: PeriodicScheduler (30s drains, remote polls)
- conflicts: ConflictResolver
- facade / service: public entry point and wiring
"""
