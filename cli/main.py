#!/usr/bin/env python3
"""
Dramatize CLI - operator tools for the stream gate.
"""

import argparse
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from api.video_security import VideoSecurityManager
from config import (
    ALLOWED_DOMAINS,
    CDN_BASE_URL,
    HLS_ENCRYPTION_KEY,
    HLS_ENCRYPTION_KEY_CONFIGURED,
    PORT,
    TOKEN_ALGORITHM,
    TOKEN_EXPIRY,
    VIDEO_SECRET_KEY,
    VIDEO_SECRET_KEY_CONFIGURED,
)

console = Console()

KEY_FILE_NAME = "enc.key"
KEYINFO_FILE_NAME = "enc.keyinfo"


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def require_secret(configured: bool, env_name: str):
    """Raise CLIError unless the secret came from the environment."""
    if not configured:
        raise CLIError(f"{env_name} is not set; export the same value the server uses")


def build_manager(token_expiry: int = TOKEN_EXPIRY) -> VideoSecurityManager:
    return VideoSecurityManager(
        secret_key=VIDEO_SECRET_KEY,
        encryption_key=HLS_ENCRYPTION_KEY,
        allowed_domains=ALLOWED_DOMAINS,
        token_expiry=token_expiry,
        cdn_base_url=CDN_BASE_URL,
        algorithm=TOKEN_ALGORITHM,
    )


def write_keyinfo(manager: VideoSecurityManager, video_id: str, output_dir: Path, key_url: str) -> Path:
    """
    Write the derived key and an ffmpeg key info file for HLS packaging.

    The key info file has the key URI players will fetch, then the local
    path of the key file, as expected by ffmpeg's ``-hls_key_info_file``.

    Returns:
        Path to the key info file
    """
    if not output_dir.is_dir():
        raise CLIError(f"Output directory does not exist: {output_dir}")

    key_path = output_dir / KEY_FILE_NAME
    key_path.write_bytes(manager.generate_hls_encryption_key(video_id))

    keyinfo_path = output_dir / KEYINFO_FILE_NAME
    keyinfo_path.write_text(f"{key_url}\n{key_path.resolve()}\n")
    return keyinfo_path


def cmd_serve(args):
    import uvicorn

    uvicorn.run("api.streaming:app", host=args.host, port=args.port)


def cmd_token(args):
    require_secret(VIDEO_SECRET_KEY_CONFIGURED, "DRAMATIZE_VIDEO_SECRET_KEY")
    manager = build_manager(token_expiry=args.expiry)
    token = manager.generate_stream_token(args.user_id, args.video_id, args.ip, args.session)

    table = Table(show_header=False)
    table.add_row("Token", token)
    table.add_row("Manifest URL", manager.generate_secure_playlist_url(args.video_id, token))
    table.add_row("Expires in", f"{manager.token_expiry}s")
    console.print(table)


def cmd_key(args):
    require_secret(HLS_ENCRYPTION_KEY_CONFIGURED, "DRAMATIZE_HLS_ENCRYPTION_KEY")
    manager = build_manager()
    if args.keyinfo:
        key_url = args.key_url or f"{manager.cdn_base_url}/{args.video_id}/key"
        keyinfo_path = write_keyinfo(manager, args.video_id, Path(args.keyinfo), key_url)
        console.print(f"Wrote {keyinfo_path}")
        console.print(f"Package with: ffmpeg ... -hls_key_info_file {keyinfo_path}")
    else:
        print(manager.generate_hls_encryption_key(args.video_id).hex())


def main():
    parser = argparse.ArgumentParser(prog="dramatize", description="Dramatize stream gate tools")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the stream gate API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=positive_int, default=PORT, help=f"Port (default: {PORT})")
    serve_parser.set_defaults(func=cmd_serve)

    # Token command
    token_parser = subparsers.add_parser("token", help="Mint a stream token for debugging a player")
    token_parser.add_argument("user_id", help="Viewer id")
    token_parser.add_argument("video_id", help="Episode id")
    token_parser.add_argument("--ip", required=True, help="Client IP the token is bound to")
    token_parser.add_argument("--session", required=True, help="Session id the token is bound to")
    token_parser.add_argument(
        "--expiry", type=positive_int, default=TOKEN_EXPIRY, help=f"Lifetime in seconds (default: {TOKEN_EXPIRY})"
    )
    token_parser.set_defaults(func=cmd_token)

    # Key command
    key_parser = subparsers.add_parser("key", help="Print or export the derived HLS key for a video")
    key_parser.add_argument("video_id", help="Episode id")
    key_parser.add_argument("--keyinfo", metavar="DIR", help="Write enc.key and enc.keyinfo into DIR")
    key_parser.add_argument("--key-url", help="Key URI written into enc.keyinfo (default: gate key route)")
    key_parser.set_defaults(func=cmd_key)

    args = parser.parse_args()
    try:
        args.func(args)
    except CLIError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
