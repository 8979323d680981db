"""
EmailRecord and its wire codecs.

Records are written as schemaless Avro binary with a fixed schema (no
registry, no evolution):

    {"type": "record", "fields": [seqno:int, subject:string, body:string]}
"""

import io
from typing import Any, Dict, Union

from fastavro import parse_schema, schemaless_reader, schemaless_writer
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import DecodeError, EncodeError

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1

NO_SUBJECT = "*No Subject*"
NO_BODY = "(No content)"

EMAIL_SCHEMA = parse_schema({
    "type": "record",
    "name": "EmailRecord",
    "namespace": "technews",
    "fields": [
        {"name": "seqno", "type": "int"},
        {"name": "subject", "type": "string"},
        {"name": "body", "type": "string"},
    ],
})


class EmailRecord(BaseModel):
    """One fetched email, from IMAP fetch to Slack post."""

    model_config = ConfigDict(strict=True, extra="forbid")

    seqno: int = Field(ge=INT32_MIN, le=INT32_MAX, description="Mailbox sequence number")
    subject: str = Field(default=NO_SUBJECT, description="Subject wrapped in Slack bold")
    body: str = Field(default=NO_BODY, description="Normalized body text")


RecordLike = Union[EmailRecord, Dict[str, Any]]


def _coerce(record: RecordLike) -> EmailRecord:
    # Re-validate even EmailRecord instances: fields may have been reassigned
    data = record.model_dump() if isinstance(record, EmailRecord) else record
    try:
        return EmailRecord.model_validate(data)
    except ValidationError as e:
        raise EncodeError(f"Invalid email record: {e}") from e


class AvroCodec:
    """Schemaless Avro binary encoding (no container header, no schema id)."""

    name = "avro"

    def encode(self, record: RecordLike) -> bytes:
        validated = _coerce(record)
        buf = io.BytesIO()
        schemaless_writer(buf, EMAIL_SCHEMA, validated.model_dump())
        return buf.getvalue()

    def decode(self, payload: bytes) -> EmailRecord:
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise DecodeError(f"Expected bytes, got {type(payload).__name__}")
        payload = bytes(payload)
        buf = io.BytesIO(payload)
        try:
            data = schemaless_reader(buf, EMAIL_SCHEMA)
        except Exception as e:
            raise DecodeError(f"Malformed Avro payload: {e}") from e

        if buf.tell() != len(payload):
            raise DecodeError(f"{len(payload) - buf.tell()} trailing bytes after record")
        try:
            record = EmailRecord.model_validate(data)
        except ValidationError as e:
            raise DecodeError(f"Decoded record violates schema: {e}") from e

        # Short reads of string fields do not raise; re-encoding catches truncation
        if self.encode(record) != payload:
            raise DecodeError("Payload is truncated or not canonically encoded")
        return record


class JsonCodec:
    """UTF-8 JSON object with the same three fields."""

    name = "json"

    def encode(self, record: RecordLike) -> bytes:
        return _coerce(record).model_dump_json().encode("utf-8")

    def decode(self, payload: bytes) -> EmailRecord:
        try:
            record = EmailRecord.model_validate_json(payload)
        except ValidationError as e:
            raise DecodeError(f"Malformed JSON record: {e}") from e
        missing = set(EmailRecord.model_fields) - record.model_fields_set
        if missing:
            raise DecodeError(f"JSON record is missing fields: {sorted(missing)}")
        return record


CODECS = {
    AvroCodec.name: AvroCodec,
    JsonCodec.name: JsonCodec,
}


def get_codec(name: str = "avro"):
    try:
        return CODECS[name.lower()]()
    except KeyError:
        raise ValueError(f"Unknown message format {name!r} (expected one of {sorted(CODECS)})") from None


def encode(record: RecordLike) -> bytes:
    """Avro-encode a record; raises EncodeError."""
    return AvroCodec().encode(record)


def decode(payload: bytes) -> EmailRecord:
    """Decode an Avro payload; raises DecodeError."""
    return AvroCodec().decode(payload)
