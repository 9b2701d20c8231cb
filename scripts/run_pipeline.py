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

from tender_pipeline.market_prices import StaticPriceProvider
from tender_pipeline.pipeline import build_pipeline
from tender_pipeline.settings import PipelineSettings
from tender_pipeline.step_executors import PIPELINE_STEPS, JobContext


def _load_json(path: str | None) -> dict | list | None:
    if not path:
        return None
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


def main() -> int:
    parser = argparse.ArgumentParser(description="Advance a tender document through the guarded pipeline")
    parser.add_argument("doc_hash", help="content hash of the tender document")
    parser.add_argument("--metadata", default="", help="path to the document analysis metadata JSON")
    parser.add_argument("--tender-id", default=None)
    parser.add_argument("--user-id", default="system")
    parser.add_argument("--step", choices=PIPELINE_STEPS, default=None, help="run a single step instead of all five")
    parser.add_argument("--prices", default="", help="path to a JSON list of market price entries")
    args = parser.parse_args()

    settings = PipelineSettings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    metadata = _load_json(args.metadata) or {}
    prices = _load_json(args.prices)
    provider = StaticPriceProvider(prices) if isinstance(prices, list) else None
    pipeline = build_pipeline(settings=settings, price_provider=provider)

    if args.step:
        context = JobContext(tender_id=args.tender_id, user_id=args.user_id, metadata=dict(metadata))
        results = [pipeline.execute_step(args.doc_hash, args.step, context)]
    else:
        results = pipeline.execute_full_pipeline(
            args.doc_hash,
            tender_id=args.tender_id,
            user_id=args.user_id,
            analysis_data=metadata,
        )

    print(
        json.dumps(
            {"doc_hash": args.doc_hash, "results": [r.as_dict() for r in results]},
            ensure_ascii=False,
            sort_keys=True,
            indent=2,
            default=str,
        )
    )
    return 0 if results and all(r.success for r in results) else 1


if __name__ == "__main__":
    raise SystemExit(main())
