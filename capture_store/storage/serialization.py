"""Session codecs for the file formats the stores read and write.

JSON documents are pretty-printed with sorted keys. Binary plists carry the
same document shape as JSON: datetimes as ISO-8601 strings, bodies as
base64 strings.
"""

from __future__ import annotations

import json
import plistlib
from enum import Enum

from pydantic import TypeAdapter, ValidationError

from capture_store.errors import (
    CorruptedDataError,
    DecodingError,
    EncodingError,
    InvalidFormatError,
    StorageError,
)
from capture_store.models import Session

_SESSION_LIST = TypeAdapter(list[Session])


class FileFormat(str, Enum):
    JSON = "json"
    PLIST = "plist"

    @property
    def extension(self) -> str:
        return self.value


def _document(value) -> object:
    try:
        if isinstance(value, Session):
            return value.model_dump(mode="json", exclude_none=True)
        return _SESSION_LIST.dump_python(value, mode="json", exclude_none=True)
    except (ValueError, TypeError) as exc:
        raise EncodingError(str(exc)) from exc


def _encode(document: object, file_format: FileFormat) -> bytes:
    if FileFormat(file_format) is FileFormat.PLIST:
        try:
            return plistlib.dumps(document, fmt=plistlib.FMT_BINARY, sort_keys=True)
        except (TypeError, OverflowError) as exc:
            raise EncodingError(str(exc)) from exc
    return json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False).encode("utf-8")


def _as_json(data: bytes, file_format: FileFormat) -> bytes:
    if FileFormat(file_format) is FileFormat.PLIST:
        try:
            return json.dumps(plistlib.loads(data)).encode("utf-8")
        except plistlib.InvalidFileException as exc:
            raise InvalidFormatError(str(exc)) from exc
        except (ValueError, TypeError) as exc:
            raise CorruptedDataError(str(exc)) from exc
    return data


def _decoding_failure(exc: ValidationError) -> StorageError:
    # unparseable bytes are corruption; a well-formed document of the wrong shape is not
    if any(error["type"] == "json_invalid" for error in exc.errors()):
        return CorruptedDataError(str(exc))
    return DecodingError(str(exc))


def encode_session(session: Session, file_format: FileFormat = FileFormat.JSON) -> bytes:
    return _encode(_document(session), file_format)


def decode_session(data: bytes, file_format: FileFormat = FileFormat.JSON) -> Session:
    try:
        return Session.model_validate_json(_as_json(data, file_format))
    except ValidationError as exc:
        raise _decoding_failure(exc) from exc


def encode_sessions(sessions: list[Session], file_format: FileFormat = FileFormat.JSON) -> bytes:
    return _encode(_document(list(sessions)), file_format)


def decode_sessions(data: bytes, file_format: FileFormat = FileFormat.JSON) -> list[Session]:
    try:
        return _SESSION_LIST.validate_json(_as_json(data, file_format))
    except ValidationError as exc:
        raise _decoding_failure(exc) from exc
