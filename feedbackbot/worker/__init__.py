"""Durable worker package.

Workers process jobs from the ``job_queue`` table, one job at a time each.

Single-process (SQLite dev):
    The poll loop runs as an asyncio.Task inside the API process.
    Enabled automatically when WORKER_EMBEDDED=true (default for SQLite).

Multi-process (PostgreSQL production):
    Start any number of workers separately:
        python -m feedbackbot.worker.worker_main
        WORKER_ID=w1 python -m feedbackbot.worker.worker_main

Claiming uses SELECT … FOR UPDATE SKIP LOCKED on PostgreSQL and a
status-guarded UPDATE on SQLite; either way no two workers get the same job.
"""
