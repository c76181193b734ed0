"""
Run one metering cycle by hand, outside Celery beat.

Useful after adding servers, or to confirm a quota reset went through without
waiting for the next scheduled run. Prints the cycle result as JSON.

Typical usage (from this repo root):
  python scripts/run_metering_cycle.py snapshot
  python scripts/run_metering_cycle.py quota-reset
  python scripts/run_metering_cycle.py alerts
"""

from __future__ import annotations

import sys
from pathlib import Path

# Allow running the script from any working directory (e.g. `python /app/scripts/...`)
# by ensuring the repo root (which contains the `app/` package) is on sys.path.
_REPO_ROOT = str(Path(__file__).resolve().parents[1])
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)

import argparse
import json

from app.logging import configure_logging
from app.services.scheduler import MeteringRuntime

_CYCLES = {
    "snapshot": MeteringRuntime.run_snapshot_cycle,
    "quota-reset": MeteringRuntime.run_quota_reconciliation_cycle,
    "alerts": MeteringRuntime.run_usage_alert_cycle,
}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("cycle", choices=sorted(_CYCLES))
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL for this run")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    result = _CYCLES[args.cycle](MeteringRuntime())
    print(json.dumps(result, indent=2, default=str))
    return 1 if result.get("errors") else 0


if __name__ == "__main__":
    raise SystemExit(main())
