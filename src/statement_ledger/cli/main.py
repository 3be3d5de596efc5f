from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Optional, Sequence

from dotenv import load_dotenv

from ..config import CHUNK_STRATEGIES, load_settings
from ..errors import ConfigurationError, LedgerError, user_message
from ..logging import get_logger
from ..orchestrator.chunking import ChunkPolicy
from ..orchestrator.export import FORMAT_CSV, FORMAT_TSV, write_export
from ..orchestrator.session import LedgerSession
from ..paths import expand_abs, export_basename, exports_dir, find_project_root

LOG = get_logger("cli-main")


def _add_input_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("files", nargs="+", help="Statement files (PDF, image, xlsx/xls, docx, txt/csv)")
    p.add_argument(
        "--strategy",
        choices=CHUNK_STRATEGIES,
        help="Lines per part, or ALL for a single part (default: suggested from the line count)",
    )
    p.add_argument("--header-rows", type=int, help="Header lines repeated as context in later parts")


def _policy(ns: argparse.Namespace, session: LedgerSession) -> Optional[ChunkPolicy]:
    header_rows = ns.header_rows if ns.header_rows is not None else session.settings.header_rows
    if ns.strategy:
        return ChunkPolicy(strategy=ns.strategy, header_rows=header_rows)
    if ns.header_rows is not None:
        suggested = session.suggested_policy()
        return ChunkPolicy(strategy=suggested.strategy, header_rows=header_rows)
    return None


def _load(ns: argparse.Namespace, session: LedgerSession) -> int:
    paths = [expand_abs(p) for p in ns.files]
    missing = [p for p in paths if not os.path.isfile(p)]
    if missing:
        LOG.error("File(s) not found: %s", ", ".join(missing))
        return 2
    session.load_files(paths)
    policy = _policy(ns, session)
    if policy is not None:
        session.rechunk(policy)
    LOG.info(
        "Loaded %d file(s): %d line(s), %d part(s), strategy %s",
        len(paths),
        session.total_lines,
        len(session.chunks),
        session.policy.strategy if session.policy else "-",
    )
    return 0


def _handle_chunk(ns: argparse.Namespace) -> int:
    session = LedgerSession(load_settings(os.getcwd()))
    code = _load(ns, session)
    if code:
        return code
    out = {
        "totalLines": session.total_lines,
        "suggested": session.suggested_policy().strategy,
        "strategy": session.policy.strategy if session.policy else None,
        "parts": [c.as_dict(include_data=ns.with_data) for c in session.chunks],
    }
    print(json.dumps(out, ensure_ascii=False, indent=2))
    return 0


async def _run_batch(ns: argparse.Namespace, session: LedgerSession) -> int:
    try:
        summary = await session.run()
    except ConfigurationError as exc:
        LOG.error("%s", exc)
        return 2
    except LedgerError as exc:
        LOG.error("Batch failed: %s", exc)
        print(user_message(exc, session.settings.locale), file=sys.stderr)
        return 1
    finally:
        await session.aclose()

    for chunk in session.chunks:
        if chunk.error:
            LOG.warning("%s failed: %s", chunk.label, chunk.error)
    LOG.info("Batch summary: %d/%d part(s) completed", summary.completed, summary.total)

    try:
        result = session.merge(ns.opening_balance)
    except LedgerError as exc:
        print(user_message(exc, session.settings.locale), file=sys.stderr)
        return 1

    fmt = FORMAT_TSV if ns.format == "tsv" else FORMAT_CSV
    out_dir = expand_abs(ns.output_dir) if ns.output_dir else exports_dir(find_project_root(os.getcwd()))
    source = ns.files[0]
    ledger_path = write_export(os.path.join(out_dir, export_basename(source, f"-ledger.{fmt}")), session.export("ledger", fmt))
    json_path = os.path.join(out_dir, export_basename(source, "-ledger.json"))
    payload = result.ledger.as_dict(session.settings.fee_contract)
    payload["warning"] = result.warning
    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)
    LOG.info("Ledger JSON written: %s", json_path)

    if ns.per_part:
        write_export(os.path.join(out_dir, export_basename(source, f"-parts.{fmt}")), session.export("chunks", fmt))

    if result.warning:
        print(result.warning, file=sys.stderr)
    print(ledger_path)
    return 0


def _handle_run(ns: argparse.Namespace) -> int:
    def _progress(done: int, total: int, label: Optional[str], ordinal: Optional[int]) -> None:
        if label:
            LOG.info("Progress %d/%d (serving: %s %s)", done, total, label, ordinal)
        else:
            LOG.info("Progress %d/%d", done, total)

    session = LedgerSession(load_settings(os.getcwd()), on_progress=_progress)
    code = _load(ns, session)
    if code:
        return code
    return asyncio.run(_run_batch(ns, session))


def _handle_serve(ns: argparse.Namespace) -> int:
    from ..frontend.app import create_app
    import uvicorn

    session = LedgerSession(load_settings(os.getcwd()))
    if ns.files:
        code = _load(ns, session)
        if code:
            return code

    allow_origins = ns.allow_origins
    if allow_origins and len(allow_origins) == 1 and allow_origins[0] == "*":
        allow_origins = ["*"]

    app = create_app(session, allow_origins=allow_origins)
    uvicorn.run(app, host=ns.host, port=ns.port, log_level=ns.log_level)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    provided = list(argv) if argv is not None else sys.argv[1:]
    load_dotenv(os.path.join(find_project_root(os.getcwd()), ".env"))
    LOG.info(f"CLI invoked with arguments: {provided}")

    parser = argparse.ArgumentParser(
        prog="statement-ledger",
        description="Convert bank statements into a reconciled accounting ledger using LLMs.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    chunk_cmd = subparsers.add_parser("chunk", help="Extract files and preview how they are split into parts.")
    _add_input_args(chunk_cmd)
    chunk_cmd.add_argument("--with-data", action="store_true", help="Include the full part payload in the output")
    chunk_cmd.set_defaults(handler=_handle_chunk)

    run_cmd = subparsers.add_parser(
        "run",
        help="Process every part, merge and write the ledger.",
        description="Extract, chunk, send each part to the model waterfall, merge, reconcile and export.",
    )
    _add_input_args(run_cmd)
    run_cmd.add_argument("--opening-balance", help="Override the opening balance (e.g. 1.000.000)")
    run_cmd.add_argument("--output-dir", help="Export directory (default: var/exports at repo root)")
    run_cmd.add_argument("--format", choices=[FORMAT_CSV, FORMAT_TSV], default=FORMAT_CSV)
    run_cmd.add_argument("--per-part", action="store_true", help="Also export the unmerged rows of every part")
    run_cmd.set_defaults(handler=_handle_run)

    serve_cmd = subparsers.add_parser("serve", help="Run the JSON API over a ledger session.")
    serve_cmd.add_argument("files", nargs="*", help="Statement files to load before serving")
    serve_cmd.add_argument("--strategy", choices=CHUNK_STRATEGIES)
    serve_cmd.add_argument("--header-rows", type=int)
    serve_cmd.add_argument("--host", default="127.0.0.1")
    serve_cmd.add_argument("--port", type=int, default=8002)
    serve_cmd.add_argument("--log-level", default="info")
    serve_cmd.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )
    serve_cmd.set_defaults(handler=_handle_serve)

    args = parser.parse_args(provided)
    try:
        code = args.handler(args)
    except ConfigurationError as exc:
        LOG.error("Configuration error: %s", exc)
        code = 2
    except LedgerError as exc:
        LOG.error("%s", exc)
        code = 1
    LOG.info(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
