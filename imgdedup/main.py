import argparse
import logging
import os
import signal
import sys
import threading

import uvicorn
from botocore.exceptions import BotoCoreError
from sqlalchemy.exc import SQLAlchemyError

from imgdedup.services.api import create_app
from imgdedup.services.common import config
from imgdedup.services.common.config import DBOptions, SvcOptions
from imgdedup.services.common.db import make_session_factory
from imgdedup.services.common.s3_client import client_for
from imgdedup.services.deduper.copier import ConditionalCopier
from imgdedup.services.deduper.errors import IndexUnavailable
from imgdedup.services.deduper.index import FingerprintIndex
from imgdedup.services.deduper.processor import Deduper
from imgdedup.services.deduper.service import ImgDeduper
from imgdedup.services.deduper.source import ObjectSource

EXIT_SUCCESS = 0
EXIT_ERR = 1
EXIT_INTERRUPT = 2

log = logging.getLogger("imgdedup")


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Copy one object per distinct checksum from a source bucket to a destination bucket.")
    ap.add_argument("--debug", action="store_true", default=config.DEBUG, help="Debug logging level")
    ap.add_argument("--limit", type=int, default=config.PROCESS_LIMIT, help="Number of files to process before terminating")
    ap.add_argument("--host", default=config.API_HOST, help="Address the health/metrics server binds to")
    ap.add_argument("--port", type=int, default=config.API_PORT, help="Port to listen on")
    ap.add_argument("--src", default=config.SRC_BUCKET, help="Source bucket name")
    ap.add_argument("--dst", default=config.DST_BUCKET, help="Destination bucket name")
    ap.add_argument("--prefix", default=config.NAME_PREFIX, help="Bucket prefix on which to operate")
    ap.add_argument("--suffix", default=config.NAME_GLOB_SUFFIX, help="Glob matched below the prefix")
    ap.add_argument("-u", dest="db_username", default=config.DB_USERNAME, help="Database username")
    ap.add_argument("-p", dest="db_password", default=config.DB_PASSWORD, help="Database password")
    ap.add_argument("-c", dest="db_connection_string", default=config.DB_CONNECTION_STRING, help="Database connection string")
    ap.add_argument("--db-url", default=config.DB_URL, help="Full SQLAlchemy URL, overrides -u/-p/-c")
    args = ap.parse_args(argv)

    svc_opts = SvcOptions(
        limit=args.limit,
        prefix=args.prefix,
        suffix=args.suffix,
        src_bucket_name=args.src,
        dst_bucket_name=args.dst,
    )
    db_opts = DBOptions(
        username=args.db_username,
        password=args.db_password,
        connection_string=args.db_connection_string,
        url=args.db_url,
    )
    return args, svc_opts, db_opts


def setup_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


def build_service(client, session_factory, opts: SvcOptions) -> ImgDeduper:
    index = FingerprintIndex(session_factory)
    source = ObjectSource(client, opts.src_bucket_name, pattern=opts.glob)
    copier = ConditionalCopier(client, opts.src_bucket_name, opts.dst_bucket_name)
    return ImgDeduper(index, source, Deduper(index, copier), limit=opts.limit)


def start_web_server(svc, host: str, port: int, debug: bool = False) -> uvicorn.Server:
    server = uvicorn.Server(uvicorn.Config(
        create_app(svc), host=host, port=port,
        log_level="debug" if debug else "info", access_log=debug,
    ))
    threading.Thread(target=server.run, name="web", daemon=True).start()
    log.info("serving /metrics and /health on %s:%d", host, port)
    return server


def install_signal_handlers(svc) -> None:
    received = []

    def handler(signum, frame):
        received.append(signum)
        if len(received) == 1:
            log.info("signal %s received, stopping after current object", signal.Signals(signum).name)
            svc.stop()
            return
        # second signal, hard exit
        os._exit(EXIT_INTERRUPT)

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def main(argv=None) -> int:
    args, svc_opts, db_opts = parse_args(argv)
    setup_logging(args.debug)

    try:
        client = client_for()
    except BotoCoreError as e:
        log.error("failed to create storage client error=%s", e)
        return EXIT_ERR
    log.info("storage client created")

    try:
        session_factory = make_session_factory(db_opts.dsn)
    except (SQLAlchemyError, ImportError) as e:
        log.error("failed to configure database error=%s", e)
        return EXIT_ERR
    log.info("database engine configured")

    svc = build_service(client, session_factory, svc_opts)
    server = start_web_server(svc, args.host, args.port, args.debug)
    install_signal_handlers(svc)

    try:
        summary = svc.start()
    except IndexUnavailable as e:
        log.error("service failure error=%s", e)
        return EXIT_ERR
    finally:
        server.should_exit = True
        session_factory.kw["bind"].dispose()
    if summary.listing_incomplete:
        log.error("bucket listing was abandoned, run again to process the rest")
        return EXIT_ERR
    return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
