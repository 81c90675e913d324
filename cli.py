"""Command-line entry point: same pipeline as the service, JSON to stdout."""

import argparse, asyncio, logging, sys
from pathlib import Path

from dotenv import load_dotenv

from errors import PipelineError
from llm import BATCH_SIZE
from portfolio import Settings, build_portfolio

log = logging.getLogger("git2page")


def _positive_int(value: str) -> int:
    n = int(value)
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value}")
    return n


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="git2page",
                                description="Build a portfolio document from a GitHub account.")
    p.add_argument("username", help="GitHub account to analyze.")
    p.add_argument("--api-url", default="", help="LLM endpoint (default: $LLM_API_URL).")
    p.add_argument("--api-key", default="", help="LLM API key (default: $LLM_API_KEY).")
    p.add_argument("--model", default="", help="Model name (default: $LLM_MODEL).")
    p.add_argument("--github-token", default="", help="GitHub token (default: $GITHUB_TOKEN).")
    p.add_argument("--language", default="", help="Output language (default: Turkish).")
    p.add_argument("--batch-size", type=_positive_int, default=BATCH_SIZE, help="Repos per LLM call.")
    p.add_argument("-o", "--output", type=Path, help="Write JSON here instead of stdout.")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return p


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    load_dotenv()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s", stream=sys.stderr)

    s = Settings.resolve(args.api_url, args.api_key, args.model, args.github_token, args.language)
    try:
        doc = asyncio.run(build_portfolio(args.username, s, batch_size=args.batch_size))
    except PipelineError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    out = doc.model_dump_json(indent=2)
    if args.output:
        args.output.write_text(out + "\n", encoding="utf-8")
        log.info(f"Wrote {len(doc.projects)} project cards to {args.output}")
    else:
        print(out)
    return 0


if __name__ == "__main__":
    sys.exit(main())
