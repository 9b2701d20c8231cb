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

from tender_pipeline.cost_simulation import CostSimulationEngine, SimulationConfig
from tender_pipeline.errors import PipelineError
from tender_pipeline.kik_compliance import KikComplianceAnalyzer
from tender_pipeline.settings import PipelineSettings


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a catering cost simulation from a JSON input file")
    parser.add_argument("input", help="path to a SimulationInput JSON document")
    parser.add_argument("--offer-price", type=float, default=None, help="offer price to check against the ADT threshold")
    parser.add_argument("--k-factor", type=float, default=None, help="override KIK_K_FACTOR")
    parser.add_argument("--with-explanation", action="store_true", help="always include the ADT explanation")
    args = parser.parse_args()

    settings = PipelineSettings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    k_factor = settings.k_factor if args.k_factor is None else args.k_factor

    payload = json.loads(pathlib.Path(args.input).read_text(encoding="utf-8"))
    try:
        analyzer = KikComplianceAnalyzer(k_factor=k_factor)
        engine = CostSimulationEngine(SimulationConfig(k_factor=k_factor), analyzer=analyzer)
        output = engine.simulate(payload)
        report = analyzer.analyze(output, offer_price=args.offer_price)
    except PipelineError as exc:
        print(json.dumps({"error": exc.as_dict()}, ensure_ascii=False, sort_keys=True, indent=2))
        return 1

    result = {
        "simulation": output.model_dump(),
        "kik_report": report.model_dump(exclude={"explanation"}),
    }
    if report.explanation is not None:
        result["adt_explanation"] = report.explanation.model_dump()
    elif args.with_explanation:
        result["adt_explanation"] = analyzer.generate_explanation(output, offer_price=args.offer_price).model_dump()
    print(json.dumps(result, ensure_ascii=False, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
