"""
Command-Line Interface for tts-gateway.

Operational helpers that need no running server, plus a launcher for it.

Usage Examples:
    # How would this text be handled? (chunks + request fingerprint)
    tts-gateway "Hello there. How are you?" --json

    # Same for every line of a file, with a custom chunk size
    tts-gateway --file inputs.txt --max-chars 500

    # Fingerprint for a specific voice and settings
    tts-gateway --text "Hi" --voice 21m00Tcm4TlvDq8ikWAM --stability 0.3

    # Create the database tables
    tts-gateway --init-db

    # Sign a webhook body for a manual curl test
    tts-gateway --sign-webhook event.json

    # Run the HTTP server
    tts-gateway --serve --host 0.0.0.0 --port 8000

Environment Variables:
    TTS_GW_SETTINGS: Path to the settings YAML (default config/settings.yaml)
    TTS_GW_DATABASE_URL: Database URL override
    TTS_GW_WEBHOOK_SECRET: Secret used by --sign-webhook
"""
from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from tts_gateway.core.config import GatewayConfig, load_settings
from tts_gateway.core.logging import configure_logging, get_logger, info, set_request_id
from tts_gateway.db.datastore import Datastore
from tts_gateway.services.validators import validate_voice_settings
from tts_gateway.services.webhook_service import sign_payload
from tts_gateway.tts.chunker import chunk_text
from tts_gateway.tts.fingerprint import fingerprint


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="tts-gateway", description="tts-gateway CLI")

    parser.add_argument("text_pos", nargs="?", help="Text to analyze (positional)")
    parser.add_argument("--text", help="Text to analyze")
    parser.add_argument("--file", help="Input file (1 line = 1 item)")
    parser.add_argument("--settings", help="Settings YAML (default: TTS_GW_SETTINGS or config/settings.yaml)")

    parser.add_argument("--max-chars", type=int, help="Chunk size override")
    parser.add_argument("--voice", help="Voice id override")
    parser.add_argument("--stability", type=float, help="Voice stability override")
    parser.add_argument("--similarity-boost", type=float, help="Voice similarity boost override")

    parser.add_argument("--init-db", action="store_true", help="Create database tables and exit")
    parser.add_argument("--sign-webhook", metavar="PATH", help="Print the signature header for a webhook body")
    parser.add_argument("--serve", action="store_true", help="Run the HTTP server")
    parser.add_argument("--host", default="127.0.0.1", help="Bind host for --serve")
    parser.add_argument("--port", type=int, default=8000, help="Bind port for --serve")

    parser.add_argument("--json", action="store_true", help="Print JSON output")

    return parser.parse_args(argv)


def _load_config(args: argparse.Namespace) -> GatewayConfig:
    path = args.settings or os.getenv("TTS_GW_SETTINGS", "config/settings.yaml")
    return load_settings(path, missing_ok=args.settings is None).get_config()


def _load_texts(args: argparse.Namespace) -> List[str]:
    """
    Texts from --file, --text or the positional argument.

    Raises:
        SystemExit: No input, or --file combined with a text.
    """
    text = args.text or args.text_pos

    if args.file:
        if text:
            raise SystemExit("Use --file without --text or positional text.")
        lines = Path(args.file).read_text(encoding="utf-8").splitlines()
        items = [line.strip() for line in lines if line.strip()]
        if not items:
            raise SystemExit("Input file is empty.")
        return items

    if not text:
        raise SystemExit("Provide --text, a positional text or --file.")
    return [text]


def _summary_for_text(text: str, voice_id: str, settings: Dict[str, Any], config: GatewayConfig,
                      max_chars: int) -> Dict[str, Any]:
    cr = chunk_text(text, max_chars)
    return {
        "text_len": len(text),
        "mode": "batch" if len(text) > config.pipeline.sync_threshold else "sync",
        "voice_id": voice_id,
        "request_hash": fingerprint(text, voice_id, settings),
        "chunks": len(cr.chunks),
        "chunk_lengths": [len(c) for c in cr.chunks],
    }


def _sign_webhook(path: str, config: GatewayConfig) -> Dict[str, str]:
    if not config.webhook.secret:
        raise SystemExit("No webhook secret configured (set TTS_GW_WEBHOOK_SECRET).")
    body = Path(path).read_bytes()
    return {"header": config.webhook.signature_header, "signature": sign_payload(config.webhook.secret, body)}


def _serve(args: argparse.Namespace) -> None:
    import uvicorn

    if args.settings:
        os.environ["TTS_GW_SETTINGS"] = args.settings
    uvicorn.run("tts_gateway.main:create_app", factory=True, host=args.host, port=args.port)


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.

    Returns:
        Exit code (0 for success).
    """
    args = _parse_args(argv)

    if args.serve:
        _serve(args)
        return 0

    configure_logging()
    set_request_id(uuid4().hex[:12])
    log = get_logger("tts-gateway.cli")
    config = _load_config(args)

    if args.init_db:
        datastore = Datastore(config.database.url, echo=config.database.echo)
        datastore.create_all()
        datastore.dispose()
        info(log, "database_initialized", database=config.database.url.split("://")[0])
        print(json.dumps({"ok": True, "database": config.database.url}) if args.json else "Database ready.")
        return 0

    if args.sign_webhook:
        signed = _sign_webhook(args.sign_webhook, config)
        print(json.dumps(signed) if args.json else f"{signed['header']}: {signed['signature']}")
        return 0

    texts = _load_texts(args)
    voice_id = args.voice or config.provider.default_voice_id
    overrides: Dict[str, Any] = {}
    if args.stability is not None:
        overrides["stability"] = args.stability
    if args.similarity_boost is not None:
        overrides["similarity_boost"] = args.similarity_boost
    settings = validate_voice_settings(
        overrides,
        config.provider.default_stability,
        config.provider.default_similarity_boost,
    )
    max_chars = args.max_chars or config.pipeline.max_chunk_size

    items = [_summary_for_text(t, voice_id, settings, config, max_chars) for t in texts]
    info(log, "cli_summary", items=len(items), max_chars=max_chars)

    if args.json:
        print(json.dumps({"items": items}, ensure_ascii=False, indent=2))
    else:
        for i, item in enumerate(items, start=1):
            print(f"[{i}] {item['text_len']} chars, {item['chunks']} chunk(s), {item['mode']}, "
                  f"hash={item['request_hash']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
