"""Entry point for the mail intake service.

Usage::

    python -m mail_intake serve             # timer loop + control API
    python -m mail_intake run-once [--force] # one cycle, result as JSON
"""

from __future__ import annotations

import asyncio
import sys


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in ("serve", "run-once"):
        print("Usage: python -m mail_intake <serve|run-once> [--force]", file=sys.stderr)
        sys.exit(1)

    from .config import IntakeConfig
    from .models import CycleStatus
    from .service import IntakeService

    mode = sys.argv[1]
    service = IntakeService(IntakeConfig())

    if mode == "serve":
        asyncio.run(service.run())

    elif mode == "run-once":
        result = asyncio.run(service.run_once(force="--force" in sys.argv[2:]))
        print(result.model_dump_json(indent=2))
        if result.status == CycleStatus.ERROR or (result.batch and result.batch.is_failure):
            sys.exit(2)


if __name__ == "__main__":
    main()
