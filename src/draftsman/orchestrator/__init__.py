"""Job orchestration: idempotent intake, durable state, lanes and workers.

Jobs move through a guarded state machine persisted in SQLite. Work travels
as messages in a durable queue with two lanes (orchestration and
notifications); the store stays the source of truth and queue payloads are
only hints. A job may pause for human input, resume from any channel, or
expire when nobody answers in time.
"""
