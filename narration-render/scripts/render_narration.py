#!/usr/bin/env python3
from __future__ import annotations

"""Submit, process and inspect narration renders from the command line.

Exit codes: 0 on success, 1 when a render fails, 2 for bad input.
"""

import argparse
import dataclasses
import json
import os
import sys
from typing import Any, Dict, Optional

from narration.config import RenderConfig
from narration.errors import (
    ERROR_KIND_NOT_FOUND,
    RenderInputError,
    RenderOperationError,
    RetryExhaustedError,
    classify_render_exception,
)
from narration.io_utils import read_text_file_with_fallback
from narration.logging_utils import Logger
from narration.render_jobs import RenderService
from narration.storage import LocalStorageGateway
from narration.synthesis_engine import create_synthesis_engine

EXIT_OK = 0
EXIT_RENDER_FAILED = 1
EXIT_INPUT_ERROR = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Render narration text to mastered speech audio.",
    )
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--debug", action="store_true")
    parser.add_argument("--storage-dir", default=None, help="Override RENDER_STORAGE_DIR")
    sub = parser.add_subparsers(dest="command", required=True)

    submit = sub.add_parser("submit", help="Create a queued render and print its id")
    submit.add_argument("text_file", help="Plain-text narration script")
    submit.add_argument("--settings", default=None, help="Tuning settings JSON file")

    process = sub.add_parser("process", help="Run the worker for a submitted render")
    process.add_argument("render_id")

    run = sub.add_parser("run", help="Submit and process in one go")
    run.add_argument("text_file", help="Plain-text narration script")
    run.add_argument("--settings", default=None, help="Tuning settings JSON file")
    run.add_argument("--out", default=None, help="Copy the final audio to this path")

    status = sub.add_parser("status", help="Print the status JSON of a render")
    status.add_argument("render_id")
    return parser.parse_args(argv)


def _load_settings(path: Optional[str]) -> Optional[Dict[str, Any]]:
    if not path:
        return None
    text, _enc = read_text_file_with_fallback(path)
    try:
        payload = json.loads(text)
    except ValueError as exc:
        raise RenderInputError(f"Settings file is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise RenderInputError("Settings file must contain a JSON object")
    return payload


def _read_script(path: str, logger: Logger) -> str:
    text, _enc = read_text_file_with_fallback(
        path,
        on_fallback=lambda enc: logger.warn("input_encoding_fallback", path=path, encoding=enc),
    )
    return text


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True))


def _copy_final(service: RenderService, final_path: str, out_path: str) -> None:
    data = service.storage.get(final_path)
    out_dir = os.path.dirname(os.path.abspath(out_path))
    os.makedirs(out_dir, exist_ok=True)
    tmp = f"{out_path}.tmp"
    with open(tmp, "wb") as f:
        f.write(data)
    os.replace(tmp, out_path)


def build_service(config: RenderConfig, logger: Logger) -> RenderService:
    storage = LocalStorageGateway(root_dir=config.storage.root_dir, base_url=config.storage.base_url)
    engine = create_synthesis_engine(config=config.synthesis, logger=logger)
    return RenderService(config=config, storage=storage, engine=engine, logger=logger)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    config = RenderConfig.from_env()
    log_cfg = config.logging
    if args.debug:
        log_cfg = dataclasses.replace(log_cfg, level="DEBUG", debug_events=True)
    elif args.verbose:
        log_cfg = dataclasses.replace(log_cfg, level="INFO")
    config = dataclasses.replace(config, logging=log_cfg)
    if args.storage_dir:
        config = dataclasses.replace(
            config,
            storage=dataclasses.replace(config.storage, root_dir=args.storage_dir),
        )
    logger = Logger.create(log_cfg)

    try:
        service = build_service(config, logger)
        if args.command == "status":
            _print_json(service.read_status(args.render_id))
            return EXIT_OK
        if args.command == "process":
            result = service.process(args.render_id)
            _print_json({"renderId": result.render_id, "final": result.final_url})
            return EXIT_OK

        raw_script = _read_script(args.text_file, logger)
        settings = _load_settings(args.settings)
        submission = service.submit(raw_script, settings)
        if args.command == "submit":
            print(submission.render_id)
            return EXIT_OK

        result = service.process(submission.render_id)
        if args.out:
            _copy_final(service, result.final_path, args.out)
        _print_json(
            {
                "renderId": result.render_id,
                "final": result.final_url,
                "out": args.out or "",
                "diagnostics": result.diagnostics,
            }
        )
        return EXIT_OK
    except RenderInputError as exc:
        logger.error("render_input_error", error=str(exc))
        return EXIT_INPUT_ERROR
    except OSError as exc:
        logger.error("render_input_unreadable", error=str(exc))
        return EXIT_INPUT_ERROR
    except RetryExhaustedError as exc:
        if exc.last_error_kind == ERROR_KIND_NOT_FOUND:
            logger.error("render_not_found", error=str(exc))
            return EXIT_INPUT_ERROR
        logger.error("render_storage_failed", error=str(exc), error_kind=exc.error_kind)
        return EXIT_RENDER_FAILED
    except RenderOperationError as exc:
        logger.error("render_command_failed", error=str(exc), error_kind=exc.error_kind)
        return EXIT_RENDER_FAILED
    except Exception as exc:  # noqa: BLE001
        logger.error("render_command_failed", error=str(exc), error_kind=classify_render_exception(exc))
        return EXIT_RENDER_FAILED


if __name__ == "__main__":
    sys.exit(main())
