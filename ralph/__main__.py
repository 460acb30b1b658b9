"""Allow running the harness with ``python -m ralph``."""

from ralph.cli import main

main()
