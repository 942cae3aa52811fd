#!/usr/bin/env python3
"""Infinite canvas CLI - validate, organize and fit canvas files, or run the server."""

import argparse
import json
import sys
from pathlib import Path

from loguru import logger

from canvas_core import config, persistence
from canvas_core.canvas import Canvas
from canvas_core.errors import ImportMalformed
from canvas_core.logging_config import configure_logging
from canvas_core.validation import validate_graph, validation_summary


def _json_out(data, code=0):
    print(json.dumps(data))
    sys.exit(code)


def _parse_list_arg(value):
    """Parse a list argument from JSON string or return None."""
    if value is None:
        return None
    try:
        parsed = json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return None
    return parsed if isinstance(parsed, list) else None


def _open(file_path) -> Canvas:
    canvas = Canvas()
    try:
        persistence.open_canvas(canvas, file_path)
    except FileNotFoundError as e:
        _json_out({"status": "error", "error": str(e)}, code=1)
    except ImportMalformed as e:
        _json_out({"status": "error", **e.to_dict()}, code=1)
    return canvas


# ── Files ────────────────────────────────────────────────────────────────────

def cmd_new(args):
    canvas = Canvas(name=args.name)
    path = persistence.save_canvas(canvas, args.file_path)
    _json_out({"success": True, "filePath": str(path), "canvasName": canvas.name})


def cmd_validate(args):
    try:
        document = persistence.parse_document(Path(args.file_path).read_bytes())
    except FileNotFoundError:
        _json_out({"status": "error", "error": f"File not found: {args.file_path}"}, code=1)
    except ImportMalformed as e:
        _json_out({"success": False, **e.to_dict()}, code=1)

    issues = validate_graph(document.nodes, document.connections, document.groups)
    summary = validation_summary(issues)
    _json_out({
        "success": summary["errors"] == 0,
        "issues": [issue.to_dict() for issue in issues],
        "summary": summary,
    }, code=0 if summary["errors"] == 0 else 1)


# ── Layout ───────────────────────────────────────────────────────────────────

def cmd_organize(args):
    canvas = _open(args.file_path)
    node_ids = _parse_list_arg(args.node_ids) or [node.id for node in canvas.store.nodes]

    result = canvas.organize(node_ids)
    if result is None:
        _json_out({"success": False, "error": "Need at least 2 nodes to organize"}, code=1)

    output = persistence.save_canvas(canvas, args.output or args.file_path)
    _json_out({
        "success": True,
        "filePath": str(output),
        "iterations": result.iterations,
        "converged": result.converged,
        "moved": len(result.positions),
    })


def cmd_fit(args):
    canvas = _open(args.file_path)
    canvas.set_viewport(args.width, args.height)
    if not canvas.fit_to_screen():
        _json_out({"success": False, "error": "Canvas has no nodes"}, code=1)

    if args.write:
        persistence.save_canvas(canvas, args.file_path)
    _json_out({"success": True, "transform": canvas.transform.model_dump(mode="json")})


# ── Service ──────────────────────────────────────────────────────────────────

def cmd_serve(args):
    import uvicorn

    logger.info("Serving infinite canvas on {}:{}", args.host, args.port)
    uvicorn.run("canvas_server.main:app", host=args.host, port=args.port,
                log_level="debug" if args.verbose else "info")


# ── Main ─────────────────────────────────────────────────────────────────────

def main(argv=None):
    parser = argparse.ArgumentParser(description="Infinite canvas CLI")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("new", help="Write an empty canvas file")
    p.add_argument("file_path")
    p.add_argument("--name", default="Untitled Canvas")

    p = sub.add_parser("validate", help="Check a canvas file for structural issues")
    p.add_argument("file_path")

    p = sub.add_parser("organize", help="Force-directed layout of a canvas file")
    p.add_argument("file_path")
    p.add_argument("--node-ids", default=None, help="JSON list of node ids (default: all)")
    p.add_argument("--output", default=None, help="Write here instead of in place")

    p = sub.add_parser("fit", help="Compute the fit-to-screen transform")
    p.add_argument("file_path")
    p.add_argument("--width", type=float, default=1280)
    p.add_argument("--height", type=float, default=800)
    p.add_argument("--write", action="store_true", help="Store the transform in the file")

    p = sub.add_parser("serve", help="Run the HTTP/WebSocket server")
    p.add_argument("--host", default=config.HOST)
    p.add_argument("--port", type=int, default=config.PORT)

    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose)

    cmd_map = {
        "new": cmd_new,
        "validate": cmd_validate,
        "organize": cmd_organize,
        "fit": cmd_fit,
        "serve": cmd_serve,
    }
    cmd_map[args.command](args)


if __name__ == "__main__":
    main()
