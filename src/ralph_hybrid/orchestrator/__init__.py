"""Iteration loop that drives an external coding agent against a task ledger.

The agent is opaque: it is a CLI that reads a prompt, edits the workspace and
flips items in the JSON task ledger. This package owns everything around it:
admission control, output classification, completion verification and the
circuit breaker that stops a loop which no longer makes progress. All loop
state lives in plain files so a crashed or interrupted run picks up exactly
where it stopped.
"""
