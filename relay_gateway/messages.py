"""
Message normalization.

The two accepted body encodings are decoded into one ``Message`` value:

  text/plain            the whole body is the text, no attachment
  multipart/form-data   optional ``message`` part (text) and optional
                        ``file`` part (attachment with declared filename)

Other multipart parts are ignored. The content type is classified once at
the HTTP boundary by ``parse_content_type``; ``normalize`` only sees the
resulting variant.
"""

from __future__ import annotations

import codecs
import mimetypes
from dataclasses import dataclass
from typing import Optional, Union

from python_multipart import FormParser
from python_multipart.exceptions import FormParserError
from python_multipart.multipart import parse_options_header

from relay_gateway.errors import EmptyMessage, MalformedBody

MESSAGE_FIELD = "message"
FILE_FIELD = "file"
DEFAULT_CHARSET = "utf-8"


@dataclass(frozen=True)
class PlainText:
    charset: str = DEFAULT_CHARSET


@dataclass(frozen=True)
class MultipartForm:
    boundary: str


Content = Union[PlainText, MultipartForm]


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    mime_type: Optional[str] = None


@dataclass(frozen=True)
class Message:
    sender: str
    topic: str
    text: Optional[str] = None
    attachment: Optional[Attachment] = None


def parse_content_type(header: str | None) -> Content | None:
    """Return the body variant for a Content-Type header, or None if unsupported."""
    if not header:
        return None
    raw_type, params = parse_options_header(header)
    media_type = raw_type.decode("latin-1").strip().lower()

    if media_type == "text/plain":
        charset = params.get(b"charset", b"").decode("latin-1").strip()
        return PlainText(charset or DEFAULT_CHARSET)

    if media_type == "multipart/form-data":
        # a missing boundary is reported by normalize() once the caller is authorized
        boundary = params.get(b"boundary", b"").decode("latin-1")
        return MultipartForm(boundary)

    return None


def guess_mime_type(filename: str) -> str | None:
    return mimetypes.guess_type(filename)[0]


def _decode_filename(raw: bytes) -> str:
    try:
        name = raw.decode("utf-8")
    except UnicodeDecodeError:
        name = raw.decode("latin-1")
    return name.replace("\\", "/").rsplit("/", 1)[-1].strip()


def decode_plain_text(raw_body: bytes, charset: str) -> str:
    try:
        codec = codecs.lookup(charset)
    except LookupError as exc:
        raise MalformedBody(f"unknown charset {charset!r}") from exc
    # codecs.lookup also knows bytes-to-bytes codecs (base64, zlib) and "undefined"
    try:
        return raw_body.decode(codec.name)
    except LookupError as exc:
        raise MalformedBody(f"charset {charset!r} is not a text encoding") from exc
    except UnicodeError as exc:
        raise MalformedBody(f"body is not valid {charset}") from exc


def _read_part(part) -> bytes:
    part.file_object.seek(0)
    return part.file_object.read()


def parse_multipart(raw_body: bytes, boundary: str) -> tuple[str | None, Attachment | None]:
    if not boundary:
        raise MalformedBody("multipart boundary missing")
    closing = f"--{boundary}--".encode("latin-1")
    if closing not in raw_body:
        raise MalformedBody("multipart body is truncated")
    if raw_body.strip() == closing:
        return None, None

    fields: list = []
    files: list = []

    # parts are only collected here; the parser still flushes the last file part on finalize()
    try:
        parser = FormParser("multipart/form-data", fields.append, files.append, boundary=boundary)
        parser.write(raw_body)
        parser.finalize()
    except FormParserError as exc:
        for part in files:
            part.close()
        raise MalformedBody(f"malformed multipart body: {exc}") from exc

    text: str | None = None
    attachment: Attachment | None = None
    problems: list[str] = []

    for field in fields:
        name = (field.field_name or b"").decode("latin-1")
        if name == MESSAGE_FIELD:
            try:
                text = (field.value or b"").decode("utf-8")
            except UnicodeDecodeError:
                problems.append("message is not valid UTF-8")
        elif name == FILE_FIELD:
            problems.append("multipart filename missing")

    try:
        for part in files:
            name = (part.field_name or b"").decode("latin-1")
            if name == MESSAGE_FIELD:
                try:
                    text = _read_part(part).decode("utf-8")
                except UnicodeDecodeError:
                    problems.append("message is not valid UTF-8")
            elif name == FILE_FIELD:
                filename = _decode_filename(part.file_name or b"")
                if not filename:
                    problems.append("multipart filename missing")
                    continue
                attachment = Attachment(filename=filename, content=_read_part(part), mime_type=guess_mime_type(filename))
    finally:
        for part in files:
            part.close()

    if problems:
        raise MalformedBody(problems[0])
    return text, attachment


def normalize(sender: str, topic: str, content: Content, raw_body: bytes) -> Message:
    if not sender or not topic:
        raise MalformedBody("sender and topic must not be empty")

    if isinstance(content, PlainText):
        return Message(sender=sender, topic=topic, text=decode_plain_text(raw_body, content.charset))

    text, attachment = parse_multipart(raw_body, content.boundary)
    if text is None and attachment is None:
        raise EmptyMessage()
    return Message(sender=sender, topic=topic, text=text, attachment=attachment)
