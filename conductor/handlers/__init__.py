"""Background handlers for the orchestration worker.

Each handler is a timer-driven loop (or a broker consumer) with an explicit
start()/stop() lifecycle, wired up in conductor.main.
"""
