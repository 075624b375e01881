"""Entry point for the relay server.

Usage:
    python -m archive_relay [options]

Options:
    --host HOST                 Bind address (default: RELAY_HOST or 0.0.0.0)
    --port PORT                 HTTP port (default: RELAY_PORT or 3000)
    --log-dir DIR               Write log files to DIR (default: RELAY_LOG_DIR, off)
    --s3-endpoint URL           archive.org S3 endpoint (default: https://s3.us.archive.org)
    --metadata-endpoint URL     archive.org metadata endpoint
    --search-endpoint URL       archive.org advanced search endpoint
    --public-base-url URL       Base URL for item links (default: https://archive.org)
    --max-source-bytes N        Largest accepted source (default: 2 GB)
    --chunked-threshold N       Use ranged chunk uploads at or above N bytes (default: 64 MiB)
    --finalize-grace SECS       Wait before confirming an upload (default: 5)
    --cancel-on-disconnect      Cancel a subscriber's jobs when its socket closes
"""

import argparse

import uvicorn

from .config import RelayConfig
from .logging import get_logger, setup_logging
from .main import create_app

logger = get_logger("main")


def parse_args(argv=None) -> RelayConfig:
    parser = argparse.ArgumentParser(description="archive.org relay server")
    parser.add_argument("--host", default=None, help="Bind address")
    parser.add_argument("--port", type=int, default=None, help="HTTP port")
    parser.add_argument("--log-dir", default=None, help="Directory for log files")
    parser.add_argument("--s3-endpoint", default=None, help="archive.org S3 endpoint")
    parser.add_argument("--metadata-endpoint", default=None, help="archive.org metadata endpoint")
    parser.add_argument("--search-endpoint", default=None, help="archive.org advanced search endpoint")
    parser.add_argument("--public-base-url", default=None, help="Base URL for item links")
    parser.add_argument("--max-source-bytes", type=int, default=None, help="Largest accepted source")
    parser.add_argument(
        "--chunked-threshold", type=int, default=None, help="Chunked upload threshold (bytes)"
    )
    parser.add_argument(
        "--finalize-grace", type=float, default=None, help="Seconds to wait before confirming"
    )
    parser.add_argument(
        "--cancel-on-disconnect",
        action="store_true",
        help="Cancel jobs when their progress subscriber disconnects",
    )

    args = parser.parse_args(argv)

    return RelayConfig(
        host=args.host,
        port=args.port,
        log_dir=args.log_dir,
        s3_endpoint=args.s3_endpoint,
        metadata_endpoint=args.metadata_endpoint,
        search_endpoint=args.search_endpoint,
        public_base_url=args.public_base_url,
        max_source_bytes=args.max_source_bytes,
        chunked_threshold=args.chunked_threshold,
        finalize_grace=args.finalize_grace,
        cancel_on_disconnect=args.cancel_on_disconnect,
    )


def main(argv=None):
    config = parse_args(argv)
    setup_logging(config.log_dir)

    logger.info("Archive relay starting")
    logger.info(f"  Listen:     {config.host}:{config.port}")
    logger.info(f"  Storage:    {config.s3_endpoint}")
    logger.info(f"  Max source: {config.max_source_bytes} bytes")
    logger.info(f"  Chunking:   {config.chunk_size} byte chunks from {config.chunked_threshold} bytes")
    for name, value in config.summary().items():
        logger.debug(f"  {name} = {value}")

    app = create_app(config)
    try:
        uvicorn.run(app, host=config.host, port=config.port, log_level="warning")
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
