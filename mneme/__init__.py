"""mneme - persistent memory for AI coding agents.

`mneme auto` drives a planner and an executor through one opencode session.
"""

__version__ = "0.4.0"
