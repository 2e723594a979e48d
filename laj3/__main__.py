"""Entry point for `python -m laj3`."""

from __future__ import annotations

from .cli import main

raise SystemExit(main())
