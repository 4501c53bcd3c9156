"""Background workers for billing, outbox publishing and analytics snapshots."""
