"""Allow running the orchestrator with ``python -m update_cycle``."""

from update_cycle.cli import main

raise SystemExit(main())
