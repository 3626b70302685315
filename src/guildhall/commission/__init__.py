"""Commission session engine.

A commission is a unit of work handed to an independent worker process.
The daemon owns the control plane only: it validates lifecycle transitions,
spawns the worker with a file-based config handoff, listens for worker
callbacks (progress, result, question), and finalizes the commission when
the process exits, goes silent, or the user cancels it.

Durable state lives in the commission artifact (markdown with YAML front
matter under ``<project>/.lore/commissions``). Bookkeeping for running
processes is volatile and is not recovered across daemon restarts; the
per-commission state snapshot under ``<home>/state/commissions`` exists for
crash visibility only.
"""
