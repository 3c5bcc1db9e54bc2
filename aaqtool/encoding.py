import logging
import os

import chardet

logger = logging.getLogger(__name__)

UTF8_BOM = b"\xef\xbb\xbf"

# chardet names that mean "this is UTF-8 text"
_UTF8_NAMES = {"utf-8", "utf-8-sig", "utf8"}

# cp932 is the Windows superset of Shift_JIS that field instruments write
_PYTHON_CODECS = {"UTF-8": "utf-8", "SJIS": "cp932"}


class DecodeError(ValueError):
    """Bytes could not be converted to text with the chosen encoding."""

    def __init__(self, file_name, encoding, reason=""):
        self.file_name = file_name
        self.encoding = encoding
        super().__init__(f"Decode error: {file_name} ({encoding}) {reason}".rstrip())


class FileReadError(OSError):
    """An uploaded file could not be read."""


def detect_encoding(data):
    """
    Classifies raw bytes as 'UTF-8' or 'SJIS'.

    A UTF-8 byte-order mark wins outright. Otherwise chardet is consulted;
    anything it does not report as UTF-8 (including an inconclusive result)
    is treated as Shift_JIS, which is what the instruments always emit.
    """
    if data[:3] == UTF8_BOM:
        return "UTF-8"
    detected = chardet.detect(bytes(data)).get("encoding")
    if detected and detected.lower() in _UTF8_NAMES:
        return "UTF-8"
    logger.debug(f"chardet reported {detected!r}; using SJIS")
    return "SJIS"


def decode_bytes(data, encoding, file_name=""):
    """Converts bytes to text. Strips a leading BOM for UTF-8."""
    codec = _PYTHON_CODECS.get(encoding)
    if codec is None:
        raise ValueError(f"Unsupported encoding: {encoding}")
    if encoding == "UTF-8" and data[:3] == UTF8_BOM:
        data = data[3:]
    try:
        return bytes(data).decode(codec)
    except UnicodeDecodeError as e:
        raise DecodeError(file_name, encoding, str(e)) from e


def read_upload(file):
    """
    Returns (name, bytes) for an uploaded file.

    Accepts Streamlit UploadedFile / BytesIO-like objects with a ``name``
    attribute, or a filesystem path.
    """
    if isinstance(file, (str, os.PathLike)):
        path = os.fspath(file)
        try:
            with open(path, "rb") as f:
                return os.path.basename(path), f.read()
        except OSError as e:
            raise FileReadError(f"File read error: {path}: {e}") from e

    name = getattr(file, "name", "") or ""
    try:
        if hasattr(file, "getvalue"):
            return name, file.getvalue()
        file.seek(0)
        return name, file.read()
    except (OSError, ValueError) as e:
        raise FileReadError(f"File read error: {name}: {e}") from e


def upload_size(file):
    """Size in bytes without consuming the upload, or None if unknown."""
    if isinstance(file, (str, os.PathLike)):
        try:
            return os.path.getsize(file)
        except OSError:
            return None
    size = getattr(file, "size", None)
    if size is not None:
        return size
    if hasattr(file, "getbuffer"):
        return file.getbuffer().nbytes
    return None


def read_text(file, force_encoding=None):
    """Reads an upload and decodes it. Returns (name, text, encoding)."""
    name, data = read_upload(file)
    encoding = force_encoding or detect_encoding(data)
    return name, decode_bytes(data, encoding, name), encoding
