"""Sync and background engines.

- derived_index: sender groups and topics kept in step with the email table
- sync_cycle: one delta sync of one account
- scheduler: per-account sync state machine and periodic tick
- workers: scheduled sends and reminders
- newsletters: newsletter sender detection

Modules are imported directly (the store depends on derived_index).
"""
