"""Sequential orchestration of assistant CLI invocations.

A pipeline is an ordered list of tasks, each one subprocess call of the external
assistant CLI. The orchestrator runs them in array order, threads conversation
sessions from one task into the next, and records every transition in a SQLite
store so a paused or rate-limited run picks up where it stopped, even after the
process exits.

There is no queue or broker here: exactly one invocation is in flight per
pipeline, and the only suspension points are the subprocess boundary and an
explicit pause.
"""
