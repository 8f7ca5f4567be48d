# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Rebuild CLI.

    epiplane-rebuild --journal epijinfo --type article --id 12345
    epiplane-rebuild --journal epijinfo --type static-page --page about
    epiplane-rebuild --journal epijinfo --type full

Exit codes: 0 success, 1 build/process error, 2 API data error (reserved),
3 invalid arguments or configuration.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import List, Optional

from epiplane.core.config import settings
from epiplane.core.logging import setup_logging
from epiplane.rebuild import events as ev
from epiplane.rebuild.errors import ArgumentError
from epiplane.rebuild.events import BuildPhase, StreamSink
from epiplane.rebuild.executor import RebuildExecutor
from epiplane.rebuild.resource import ResourceKind


class _Parser(argparse.ArgumentParser):
    # argparse exits 2 on bad usage; 2 means something else here
    def error(self, message: str) -> None:
        raise ArgumentError(message)


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="epiplane-rebuild",
        description="Rebuild one resource (or all) of a journal site",
    )
    parser.add_argument("--journal", help="Journal code (e.g. epijinfo)")
    parser.add_argument("--type", dest="kind", help=f"One of: {', '.join(ResourceKind.values())}")
    parser.add_argument("--id", dest="resource_id", help="Resource id (article, volume, section)")
    parser.add_argument("--page", dest="page_name", help="Page name (static-page)")
    parser.add_argument("--build-command", default=None, help="Override BUILD_COMMAND")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    # Events own stdout
    setup_logging(settings.LOG_LEVEL, stream=sys.stderr)
    sink = StreamSink()

    try:
        args = build_parser().parse_args(argv)
    except ArgumentError as e:
        sink.event(ev.make_event(ev.ERROR, BuildPhase.VALIDATING, message=e.message))
        sys.exit(int(e.exit_code))

    executor = RebuildExecutor(build_command=args.build_command, sink=sink)
    job = asyncio.run(executor.run(args.journal, args.kind, args.resource_id, args.page_name))
    sys.exit(job.exit_code)


if __name__ == "__main__":
    main()
