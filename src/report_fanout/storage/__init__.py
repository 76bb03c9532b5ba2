"""SQLite persistence for reports, workloads, private queues and locks."""
