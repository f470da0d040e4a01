"""File-backed task queue and its scheduler.

Why a JSON document instead of SQLite or a broker?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Every client (the scheduler loop, operator commands, shell scripts) reads
and edits one small file in the queue directory. Writes go through
``QueueStore`` which publishes each change with an atomic rename and
replays it when another writer got in first, so readers never see a
half-written queue and no process needs a lock.

The scheduler runs one task at a time against an interactive session:
dispatch the command, watch the output for a completion marker, and pause
the whole queue when the session reports a usage limit.
"""
