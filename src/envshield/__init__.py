"""
envshield - run shell commands with secrets an AI agent never sees.

The agent names secrets; envshield resolves them, injects them into the
child process environment and scrubs them back out of the output.

Features:
- list/check: Discover secret names and where they come from (no values)
- exec: Run commands with secrets injected, output redacted
- serve: Line-delimited JSON tool server for agents
"""

__version__ = "0.1.0"
