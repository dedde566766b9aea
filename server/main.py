# =============================================================================
# VLM Inference Engine - Server Entry Point
# =============================================================================
# CLI entry point for starting the FastAPI server.  The model directory must
# contain config.json, model.pt and the tokenizer files.
# =============================================================================

import argparse
import logging

import uvicorn

from config import get_config
from vlm.tensor import resolve_dtype


def main():
    """Parse CLI arguments, apply overrides, and start the server."""
    parser = argparse.ArgumentParser(
        description="VLM Inference Engine - Server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--host", type=str, default=None, help="Server bind address")
    parser.add_argument("--port", type=int, default=None, help="Server bind port")
    parser.add_argument("--model-dir", type=str, default=None, help="Model directory (config.json + model.pt)")
    parser.add_argument("--device", type=str, default=None, help="Compute device (cpu, cuda, mps)")
    parser.add_argument("--dtype", type=str, default=None, help="Weight dtype (float32, float16, bfloat16)")
    args = parser.parse_args()

    config = get_config()

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.host is not None:
        config.server_host = args.host
    if args.port is not None:
        config.server_port = args.port
    if args.model_dir is not None:
        config.model_dir = args.model_dir
    if args.device is not None:
        config.device = args.device
    if args.dtype is not None:
        config.torch_dtype_str = args.dtype

    config.server_url = f"http://{config.server_host}:{config.server_port}"
    config.torch_dtype = resolve_dtype(config.torch_dtype_str)

    print("\n" + "=" * 60)
    print("  VLM Inference Engine - Server")
    print("=" * 60)
    print(f"  Model dir  : {config.model_dir}")
    print(f"  Device     : {config.device}")
    print(f"  Dtype      : {config.torch_dtype_str}")
    print(f"  Max tokens : {config.max_new_tokens}")
    print(f"  Listening  : {config.server_host}:{config.server_port}")
    print("=" * 60 + "\n")

    uvicorn.run(
        "server.app:app",
        host=config.server_host,
        port=config.server_port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
