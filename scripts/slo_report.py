#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tender_pipeline.settings import PipelineSettings
from tender_pipeline.sli import SLI_DEFINITIONS, TIME_WINDOWS, SliRecorder
from tender_pipeline.store import create_store_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Print SLO status for the recorded pipeline SLIs")
    parser.add_argument("--window", choices=sorted(TIME_WINDOWS), default="24h")
    parser.add_argument("--sli", choices=sorted(SLI_DEFINITIONS), default=None, help="report one SLI only")
    parser.add_argument("--include-measurements", action="store_true")
    parser.add_argument("--fail-on-critical", action="store_true", help="exit 1 when any SLO is CRITICAL")
    args = parser.parse_args()

    settings = PipelineSettings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    recorder = SliRecorder(create_store_from_env(settings=settings))

    if args.sli:
        status = recorder.calculate_slo_status(args.sli, args.window)
        report = {"overall": status["status"] if status else "UNKNOWN", "window": args.window, "slos": [status]}
    else:
        report = recorder.slo_dashboard(args.window)

    if not args.include_measurements:
        for slo in report["slos"]:
            if slo is not None:
                slo.pop("measurements", None)
    print(json.dumps(report, ensure_ascii=True, sort_keys=True, indent=2, default=str))
    if args.fail_on_critical and report["overall"] == "CRITICAL":
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
