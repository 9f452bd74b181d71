#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ontology_engine.backends import create_backend_from_env
from ontology_engine.reaper import create_reaper_from_settings


def main() -> int:
    parser = argparse.ArgumentParser(description="Release workflow leases whose owner stopped heartbeating.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    backend = create_backend_from_env()
    reaper = create_reaper_from_settings(
        scope_provider=backend.scope_provider,
        workflows=backend.workflows,
        settings=backend.settings,
    )
    if args.iterations > 0:
        stats = reaper.run_forever(stop_after_iterations=args.iterations)
    else:
        stats = reaper.run_forever(stop_after_iterations=None)
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
