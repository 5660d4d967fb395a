"""
HLS playlist rewriting.

Stored playlists reference segments by bare relative URIs. Before a playlist
is served, every segment URI gets the caller's stream token appended so the
player's follow-up segment requests pass the gate. Rewriting happens on every
fetch; nothing is cached, so a freshly issued token always propagates.
"""

import time
from pathlib import Path
from typing import Optional, Union
from urllib.parse import quote, urlsplit

import aiofiles

# Media segment extensions: MPEG-TS, CMAF fragments, packed audio
SEGMENT_EXTENSIONS = (".ts", ".m4s", ".aac")


def is_segment_reference(line: str) -> bool:
    """True for URI lines that point at a media segment (tags/comments start with #)."""
    uri = line.strip()
    if not uri or uri.startswith("#"):
        return False
    return urlsplit(uri).path.lower().endswith(SEGMENT_EXTENSIONS)


def rewrite_playlist(playlist: str, token: str, now: Optional[float] = None) -> str:
    """Append ``token`` and a cache-busting timestamp to every segment reference.

    Non-segment lines, including their line endings, are returned unchanged.
    """
    timestamp_ms = int((time.time() if now is None else now) * 1000)
    suffix = f"token={quote(token, safe='')}&t={timestamp_ms}"

    out = []
    for line in playlist.splitlines(keepends=True):
        if not is_segment_reference(line):
            out.append(line)
            continue
        body = line.rstrip("\r\n")
        ending = line[len(body):]
        uri = body.rstrip()
        separator = "&" if "?" in uri else "?"
        out.append(f"{uri}{separator}{suffix}{ending}")
    return "".join(out)


rewrite = rewrite_playlist


async def load_playlist(path: Union[str, Path]) -> str:
    """Read a stored playlist. Raises FileNotFoundError when missing."""
    async with aiofiles.open(path, mode="r", encoding="utf-8") as f:
        return await f.read()


async def load_and_rewrite(path: Union[str, Path], token: str) -> str:
    return rewrite_playlist(await load_playlist(path), token)
