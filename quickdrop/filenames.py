"""Filename normalization for uploads and download headers.

Clients do not agree on how to encode non-ASCII names in multipart headers.
:func:`decode_filename` repairs the common failure modes, and
:func:`sanitize_filename` reduces whatever comes out to a storage-safe name.
Neither ever raises: on failure the input is passed through unchanged.
"""

import re
import unicodedata
from typing import Union
from urllib.parse import quote

MAX_FILENAME_LENGTH = 255
DEFAULT_FILENAME = "file"

_UNSAFE_CHARS = re.compile(r"[^\w.\- ]", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")
# Characters typical of UTF-8 bytes that were decoded as Latin-1 or cp1252.
_MOJIBAKE_MARKERS = re.compile("[Â-ô][\u0080-¿ŒœŠšŸŽžƒˆ˜–-›€™]")
_HIGH_BYTE_RUN = re.compile(rb"[\x80-\xff]+")
# Legacy encodings tried, in order, for bytes that are not valid UTF-8.
LEGACY_ENCODINGS = ("gbk", "cp1252")


def _redecode(text: str, encoding: str) -> Union[str, None]:
    try:
        repaired = text.encode(encoding).decode("utf-8")
    except (UnicodeEncodeError, UnicodeDecodeError):
        return None
    return repaired if repaired != text else None


def _repair_mojibake(text: str) -> str:
    if text.isascii() or not _MOJIBAKE_MARKERS.search(text):
        return text
    for encoding in ("latin-1", "cp1252"):
        repaired = _redecode(text, encoding)
        if repaired is not None:
            return repaired
    return text


def _plausible(raw: bytes, encoding: str) -> bool:
    # Double-byte encodings would swallow the ASCII letter after a lone
    # Latin-1 byte, so only accept them when every high-byte run pairs up.
    if encoding == "gbk":
        return all(len(run) % 2 == 0 for run in _HIGH_BYTE_RUN.findall(raw))
    return True


def _decode_legacy(raw: bytes) -> str:
    for encoding in LEGACY_ENCODINGS:
        if not _plausible(raw, encoding):
            continue
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    return raw.decode("latin-1")


def decode_filename(raw: Union[str, bytes, None]) -> str:
    """Best-effort recovery of the name the client meant to send.

    Order of attempts:

    1. the declared encoding (UTF-8 for raw bytes, else the text as parsed);
    2. heuristic re-decoding: UTF-8 text misread as Latin-1 or cp1252 is
       repaired, and bytes that are not UTF-8 are tried as GBK, then cp1252;
    3. the input as-is (bytes fall back to Latin-1, which cannot fail).
    """

    if raw is None:
        return ""

    if isinstance(raw, bytes):
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            return _decode_legacy(raw)
        return _repair_mojibake(text)

    return _repair_mojibake(raw)


def get_extension(filename: str) -> str:
    """Return the lower-cased extension including the dot, or ``""``."""

    base = filename.replace("\\", "/").rsplit("/", 1)[-1]
    stem, dot, extension = base.rpartition(".")
    if not dot or not stem.strip(". ") or not extension:
        return ""
    return f".{extension.lower()}"


def sanitize_filename(filename: str, max_length: int = MAX_FILENAME_LENGTH) -> str:
    """Reduce *filename* to word characters, dots, dashes and spaces."""

    name = unicodedata.normalize("NFC", filename or "")
    name = name.replace("\\", "/").rsplit("/", 1)[-1]
    name = _UNSAFE_CHARS.sub("_", name)
    name = _WHITESPACE.sub(" ", name).strip(" ")
    name = name.lstrip(".")
    if not name:
        return DEFAULT_FILENAME

    if len(name) > max_length:
        extension = get_extension(name)
        if extension and len(extension) < max_length:
            name = name[: max_length - len(extension)].rstrip(" ") + extension
        else:
            name = name[:max_length]
    return name


def ascii_fallback(filename: str) -> str:
    """Transliterate to ASCII for clients that only read ``filename=``."""

    simple = unicodedata.normalize("NFKD", filename)
    simple = simple.encode("ascii", "ignore").decode("ascii")
    simple = simple.replace('"', "").replace("\\", "")
    simple = _WHITESPACE.sub(" ", simple).strip()
    stem, dot, extension = simple.rpartition(".")
    if not simple or (dot and not stem.strip("._ ")):
        return f"{DEFAULT_FILENAME}{get_extension(filename)}"
    return simple


def content_disposition(filename: str, disposition: str = "attachment") -> str:
    """Build a ``Content-Disposition`` header value for *filename*."""

    try:
        filename.encode("ascii")
    except UnicodeEncodeError:
        quoted = quote(filename, safe="!#$&+^`|")
        return f"{disposition}; filename=\"{ascii_fallback(filename)}\"; filename*=UTF-8''{quoted}"

    escaped = filename.replace("\\", "\\\\").replace('"', '\\"')
    return f'{disposition}; filename="{escaped}"'
