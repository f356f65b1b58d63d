""" Content identity for uploaded payloads.

Everything in here is a pure function of its inputs: the same bytes always give the same
digest, the same storage key and the same sniffed media type. Deduplication depends on it.
"""
from dataclasses import dataclass
import io
from typing import IO, Optional

from blake3 import blake3

from .util import chunked_read

SNIFF_LEN = 512
OCTET_STREAM = "application/octet-stream"
TEXT_PLAIN = "text/plain; charset=utf-8"
KEY_PREFIX = "blake3"


@dataclass(frozen=True)
class Fingerprint:
    digest: str
    size: int
    detected_type: str
    """ What the bytes look like, ignoring anything the client said. """
    media_type: str
    """ The type we store the blob under, see `resolve_media_type`. """


def get_digest(data: bytes) -> str:
    return blake3(data).hexdigest()


def storage_key(digest: str) -> str:
    """Where the blob with this digest lives in the blob store.

    Sharded by the first four hex characters so that no single directory or key prefix gets hot.
    """
    if len(digest) < 4:
        return f"{KEY_PREFIX}/{digest}"
    return f"{KEY_PREFIX}/{digest[:2]}/{digest[2:4]}/{digest}"


def read_payload(tape: IO[bytes] | bytes, limit: Optional[int] = None) -> bytes:
    """Read the whole payload into memory.

    If ``limit`` is given, stop as soon as more than ``limit`` bytes have been read;
    the result is then ``limit + 1`` bytes long which is enough for the caller to reject it.
    """
    if isinstance(tape, bytes):
        return tape if limit is None else tape[: limit + 1]
    buf = io.BytesIO()
    size = 0
    for chunk in chunked_read(tape):
        buf.write(chunk)
        size += len(chunk)
        if limit is not None and size > limit:
            break
    data = buf.getvalue()
    return data if limit is None else data[: limit + 1]


# (mask, pattern, media type)
# ref: https://mimesniff.spec.whatwg.org/#matching-a-mime-type-pattern
_MASKED = [
    (b"\xff\xff\xff\xff", b"%PDF", "application/pdf"),
    (b"\xff" * 11, b"%!PS-Adobe-", "application/postscript"),
    (b"\xff\xff", b"\xfe\xff", "text/plain; charset=utf-16be"),
    (b"\xff\xff", b"\xff\xfe", "text/plain; charset=utf-16le"),
    (b"\xff\xff\xff", b"\xef\xbb\xbf", TEXT_PLAIN),
    (b"\xff\xff\xff\xff", b"\x00\x00\x01\x00", "image/x-icon"),
    (b"\xff\xff\xff\xff", b"\x00\x00\x02\x00", "image/x-icon"),
    (b"\xff\xff", b"BM", "image/bmp"),
    (b"\xff\xff\xff\xff\xff\xff", b"GIF87a", "image/gif"),
    (b"\xff\xff\xff\xff\xff\xff", b"GIF89a", "image/gif"),
    (
        b"\xff\xff\xff\xff\x00\x00\x00\x00\xff\xff\xff\xff\xff\xff",
        b"RIFF\x00\x00\x00\x00WEBPVP",
        "image/webp",
    ),
    (b"\xff" * 8, b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xff\xff", b"\xff\xd8\xff", "image/jpeg"),
    (
        b"\xff\xff\xff\xff\x00\x00\x00\x00\xff\xff\xff\xff",
        b"RIFF\x00\x00\x00\x00AVI ",
        "video/avi",
    ),
    (
        b"\xff\xff\xff\xff\x00\x00\x00\x00\xff\xff\xff\xff",
        b"RIFF\x00\x00\x00\x00WAVE",
        "audio/wave",
    ),
    (
        b"\xff\xff\xff\xff\x00\x00\x00\x00\xff\xff\xff\xff",
        b"FORM\x00\x00\x00\x00AIFF",
        "audio/aiff",
    ),
    (b"\xff\xff\xff\xff", b".snd", "audio/basic"),
    (b"\xff\xff\xff\xff\xff", b"OggS\x00", "application/ogg"),
    (b"\xff\xff\xff\xff", b"MThd", "audio/midi"),
    (b"\xff\xff\xff", b"ID3", "audio/mpeg"),
    (b"\xff\xff\xff\xff", b"\x1a\x45\xdf\xa3", "video/webm"),
    (b"\xff\xff\xff", b"\x1f\x8b\x08", "application/x-gzip"),
    (b"\xff\xff\xff\xff", b"PK\x03\x04", "application/zip"),
    (b"\xff\xff\xff\xff\xff\xff\xff", b"Rar!\x1a\x07\x00", "application/x-rar-compressed"),
    (b"\xff\xff\xff\xff\xff\xff\xff\xff", b"Rar!\x1a\x07\x01\x00", "application/x-rar-compressed"),
    (b"\xff\xff\xff\xff\xff\xff", b"7z\xbc\xaf\x27\x1c", "application/x-7z-compressed"),
    (b"\xff\xff\xff\xff", b"\x00asm", "application/wasm"),
    (b"\xff\xff\xff\xff", b"wOFF", "font/woff"),
    (b"\xff\xff\xff\xff", b"wOF2", "font/woff2"),
    (b"\xff\xff\xff\xff", b"OTTO", "font/otf"),
    (b"\xff\xff\xff\xff", b"\x00\x01\x00\x00", "font/ttf"),
    (b"\xff\xff\xff\xff", b"ttcf", "font/collection"),
]

# html-ish tags must be followed by a space or '>'
_HTML_TAGS = [
    b"<!DOCTYPE HTML",
    b"<HTML",
    b"<HEAD",
    b"<SCRIPT",
    b"<IFRAME",
    b"<H1",
    b"<DIV",
    b"<FONT",
    b"<TABLE",
    b"<A",
    b"<STYLE",
    b"<TITLE",
    b"<B",
    b"<BODY",
    b"<BR",
    b"<P",
    b"<!--",
]

_WHITESPACE = b"\t\n\x0c\r "
# bytes that never occur in text
_BINARY = set(range(0x00, 0x09)) | {0x0B} | set(range(0x0E, 0x1B)) | set(range(0x1C, 0x20))


def _match_masked(data: bytes, mask: bytes, pattern: bytes) -> bool:
    if len(data) < len(pattern):
        return False
    return all((d & m) == p for d, m, p in zip(data, mask, pattern))


def _match_html(data: bytes) -> bool:
    for tag in _HTML_TAGS:
        if len(data) <= len(tag):
            continue
        if data[: len(tag)].upper() != tag:
            continue
        if tag == b"<!--" or data[len(tag)] in b" >":
            return True
    return False


def _is_mp4(data: bytes) -> bool:
    if len(data) < 12:
        return False
    box_size = int.from_bytes(data[:4], "big")
    if box_size % 4 != 0 or len(data) < box_size or data[4:8] != b"ftyp":
        return False
    for i in range(8, box_size, 4):
        if i == 12:
            # skip the minor version
            continue
        if data[i : i + 3] == b"mp4":
            return True
    return False


def sniff_media_type(data: bytes) -> str:
    """Best-effort media type of a payload from (at most) its first 512 bytes.

    Never fails: anything unrecognised is either plain text or ``application/octet-stream``.
    """
    data = data[:SNIFF_LEN]
    for mask, pattern, media_type in _MASKED:
        if _match_masked(data, mask, pattern):
            return media_type
    stripped = data.lstrip(_WHITESPACE)
    if _match_html(stripped):
        return "text/html; charset=utf-8"
    if stripped.startswith(b"<?xml"):
        return "text/xml; charset=utf-8"
    if _is_mp4(data):
        return "video/mp4"
    if any(b in _BINARY for b in data):
        return OCTET_STREAM
    return TEXT_PLAIN


def resolve_media_type(declared: Optional[str], sniffed: str) -> str:
    """Pick the media type to store.

    The client's declared type is only trusted when sniffing learned nothing.
    """
    if declared and sniffed == OCTET_STREAM:
        return declared
    return sniffed


def fingerprint(data: bytes, declared_type: Optional[str] = None) -> Fingerprint:
    detected = sniff_media_type(data)
    return Fingerprint(
        digest=get_digest(data),
        size=len(data),
        detected_type=detected,
        media_type=resolve_media_type(declared_type, detected),
    )
