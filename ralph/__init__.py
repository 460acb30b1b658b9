"""
Ralph - Autonomous task execution with the cursor-agent CLI.

This package drives a coding agent through a list of user stories, repeating
a fixed loop prompt until each story's checklist is done, recovering from
connection drops, loops and exhausted context, and committing every finished
story to a feature branch.
"""

__version__ = "0.1.0"
