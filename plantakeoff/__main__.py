"""
Command line entry point

    python -m plantakeoff plan.pdf --legend legend.json --scale 1:100 --output takeoff.json
"""

import os
import sys
import json
import logging
import argparse

from pydantic import ValidationError

from plantakeoff.core.environment import load_environment, validate_required_env_vars
from plantakeoff.core.logging_config import setup_logging
from plantakeoff.infrastructure.extractors.vision_processor import OpenAIVisionClient
from plantakeoff.services.error_types import ConversionError
from plantakeoff.services.pipeline_contracts import AnalysisRequest
from plantakeoff.services.takeoff_pipeline import TakeoffPipeline

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='plantakeoff',
        description='Quantity takeoff from a scanned architectural plan using a vision-language model'
    )
    parser.add_argument('plan', help='PDF or raster image of the plan')
    parser.add_argument('--legend', required=True,
                        help='JSON file: a list of legend entries or a full analysis request')
    parser.add_argument('--scale', help='Declared drawing scale, e.g. 1:100 or 1/4" = 1\'-0"')
    parser.add_argument('--page', type=int, default=0, help='0-based PDF page (default 0)')
    parser.add_argument('--tile-size', type=int, help='Tile edge in pixels')
    parser.add_argument('--overlap', type=int, help='Tile overlap in pixels')
    parser.add_argument('--min-confidence', type=float, help='Discard matches below this confidence')
    parser.add_argument('--dpi', type=int, help='Rasterization DPI')
    parser.add_argument('--max-workers', type=int, help='Concurrent tile requests (default sequential)')
    parser.add_argument('--timeout-ms', type=int, help='Overall analysis budget in milliseconds')
    parser.add_argument('--job-id', help='Job identifier used for stored text regions')
    parser.add_argument('--output', help='Write the result JSON here instead of stdout')
    parser.add_argument('--debug', action='store_true', help='Verbose logging')
    return parser


def build_request(args: argparse.Namespace) -> AnalysisRequest:
    with open(args.legend, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if isinstance(data, list):
        data = {"legend": data}

    overrides = {
        "scaleNotation": args.scale,
        "tileSize": args.tile_size,
        "overlap": args.overlap,
        "minConfidence": args.min_confidence,
        "dpi": args.dpi,
        "maxWorkers": args.max_workers,
        "timeoutMs": args.timeout_ms,
    }
    data.update({key: value for key, value in overrides.items() if value is not None})
    return AnalysisRequest.model_validate(data)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    load_environment()
    setup_logging(debug=True if args.debug else None)

    try:
        request = build_request(args)
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logger.error(f"Invalid legend / request file {args.legend}: {e}")
        return 1

    # A local OpenAI-compatible endpoint does not need a key
    if not os.getenv("OPENAI_BASE_URL"):
        missing = validate_required_env_vars(["OPENAI_API_KEY"])
        if missing:
            logger.error(f"No VLM endpoint configured; set {', '.join(missing)} or OPENAI_BASE_URL")
            return 1

    pipeline = TakeoffPipeline(OpenAIVisionClient())
    try:
        job = pipeline.analyze_document(args.plan, request, job_id=args.job_id, page=args.page)
    except ConversionError as e:
        logger.error(str(e))
        return 2

    payload = json.dumps(job.to_dict(), indent=2, ensure_ascii=False)
    if args.output:
        with open(args.output, 'w', encoding='utf-8') as f:
            f.write(payload)
        logger.info(f"Wrote takeoff for job {job.job_id} to {args.output}")
    else:
        print(payload)
    return 0


if __name__ == '__main__':
    sys.exit(main())
