"""Per-instance durable task orchestration.

Every agent instance is a single-writer actor addressed by
``(agent_type, instance_key)``. It owns one SQLite file holding its task
queue, key/value state and a capped event log, plus one coalesced alarm
that wakes the instance when scheduled or retried work becomes due.
"""
