# =============================================================================
# VLM Inference Engine - Client Entry Point
# =============================================================================
# Sends a prompt and zero or more image files to a running server and prints
# the generated text.  With --stream, text is printed as tokens arrive.
#
# Example:
#   python -m client.main --image cat.png "<image> What is in this picture?"
# =============================================================================

import argparse
import json
import logging
import sys

import requests

from client.client import GenerationClient
from config import get_config

logger = logging.getLogger(__name__)


def _parse_stop(values):
    """Stop entries that parse as integers are token ids; the rest are strings."""
    stop = []
    for value in values or []:
        try:
            stop.append(int(value))
        except ValueError:
            stop.append(value)
    return stop


def main():
    """CLI entry point for the generation client."""
    config = get_config()

    parser = argparse.ArgumentParser(
        description="VLM Inference Engine - Client",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("prompt", type=str, help="Prompt text (one image placeholder per image)")
    parser.add_argument("--image", action="append", default=[], help="Image file (repeatable)")
    parser.add_argument("--server-url", type=str, default=None, help="Server base URL (e.g., http://127.0.0.1:8000)")
    parser.add_argument("--max-new-tokens", type=int, default=None, help="Token budget")
    parser.add_argument("--sample", action="store_true", help="Sample instead of greedy decoding")
    parser.add_argument("--temperature", type=float, default=config.temperature)
    parser.add_argument("--top-k", type=int, default=config.top_k)
    parser.add_argument("--top-p", type=float, default=config.top_p)
    parser.add_argument("--repetition-penalty", type=float, default=config.repetition_penalty)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--stop", action="append", default=[], help="Stop string or token id (repeatable)")
    parser.add_argument("--stream", action="store_true", help="Print tokens as they are generated")
    parser.add_argument("--wait", action="store_true", help="Wait for the server to finish loading")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    client = GenerationClient(
        server_url=args.server_url or config.server_url,
        timeout=config.request_timeout_seconds,
    )
    if args.wait and not client.wait_for_server():
        logger.error("Server not available. Exiting.")
        sys.exit(1)

    sampling = {
        "greedy": not args.sample,
        "temperature": args.temperature,
        "top_k": args.top_k,
        "top_p": args.top_p,
        "repetition_penalty": args.repetition_penalty,
        "seed": args.seed,
    }
    request = dict(
        prompt=args.prompt,
        images=args.image,
        max_new_tokens=args.max_new_tokens,
        sampling=sampling,
        stop=_parse_stop(args.stop),
    )

    try:
        if args.stream:
            for event in client.stream(**request):
                sys.stdout.write(event["text"])
                sys.stdout.flush()
                if event["finish_reason"] is not None:
                    print(f"\n[{event['finish_reason']}]")
        else:
            result = client.generate(**request)
            print(result["text"])
            logger.info(
                "%d token(s), finish=%s, %.1fms, %.1f tok/s",
                len(result["token_ids"]), result["finish_reason"],
                result["processing_time_ms"], result["tokens_per_second"],
            )
    except requests.exceptions.HTTPError as exc:
        try:
            detail = exc.response.json().get("detail")
        except ValueError:
            detail = exc.response.text
        logger.error("Request failed: %s", json.dumps(detail) if isinstance(detail, dict) else detail)
        sys.exit(1)


if __name__ == "__main__":
    main()
