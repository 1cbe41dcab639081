"""Decode free-form agent output into contacts and company details.

Agent tasks report their findings in several incompatible shapes: a list of
chat messages (optionally with an attached JSON file), a JSON or prose
string, or an already-decoded object. Each shape has one decoder; the first
decoder that accepts the output wins. Parsing never raises: ambiguous or
broken output yields an empty result.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

CONTACT_MARKER_KEYS = ("full_name", "linkedin_url", "job_title", "email", "email_principal")
MESSAGE_ROLES = frozenset({"user", "assistant", "system"})
_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")

FileFetcher = Callable[[str], Any]


@dataclass
class ParseResult:
    contacts: list[dict[str, Any]] = field(default_factory=list)
    company_info: dict[str, Any] | None = None
    search_method: str | None = None
    error: str | None = None
    source: str = "none"

    def merge_from(self, other: ParseResult) -> None:
        """Overlay the fields `other` actually carries."""
        if other.contacts:
            self.contacts = other.contacts
            self.source = other.source
        if other.error:
            self.error = other.error
        if other.company_info:
            self.company_info = other.company_info
        if other.search_method:
            self.search_method = other.search_method


def looks_like_contact(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    return any(isinstance(value.get(key), str) for key in CONTACT_MARKER_KEYS)


def extract_from_object(obj: Any, *, source: str = "object") -> ParseResult:
    """Pull contacts out of a decoded JSON value."""
    if isinstance(obj, list):
        return ParseResult(contacts=[item for item in obj if looks_like_contact(item)], source=source)
    if not isinstance(obj, dict):
        return ParseResult(source=source)

    result = ParseResult(source=source)
    if isinstance(obj.get("error"), str):
        result.error = obj["error"]
    if isinstance(obj.get("company_info"), dict):
        result.company_info = obj["company_info"]
    method = obj.get("search_method") or obj.get("enrichment_method")
    if isinstance(method, str):
        result.search_method = method

    for candidate in (
        obj.get("contacts"),
        _nested(obj, "data", "contacts"),
        _nested(obj, "result", "contacts"),
    ):
        if isinstance(candidate, list):
            result.contacts = [item for item in candidate if looks_like_contact(item)]
            return result
    single = obj.get("contact")
    if looks_like_contact(single):
        result.contacts = [single]
    return result


def extract_from_text(text: str, *, source: str = "text") -> ParseResult:
    """Decode the first `{...}` span embedded in prose."""
    match = _JSON_BLOCK.search(text or "")
    if not match:
        return ParseResult(source=source)
    try:
        parsed = json.loads(match.group(0))
    except (ValueError, RecursionError):
        return ParseResult(source=source)
    return extract_from_object(parsed, source=source)


def _nested(obj: dict[str, Any], *keys: str) -> Any:
    current: Any = obj
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _is_message(item: Any) -> bool:
    return (
        isinstance(item, dict)
        and item.get("role") in MESSAGE_ROLES
        and isinstance(item.get("content"), list)
    )


def _is_message_list(output: list[Any]) -> bool:
    return any(_is_message(item) for item in output)


def _json_file_url(block: dict[str, Any]) -> str | None:
    file_url = block.get("fileUrl") or block.get("file_url")
    if block.get("type") != "output_file" or not file_url:
        return None
    file_name = str(block.get("fileName") or block.get("file_name") or "")
    mime_type = str(block.get("mimeType") or block.get("mime_type") or "")
    if "json" in mime_type.lower() or file_name.lower().endswith(".json"):
        return str(file_url)
    return None


def _decode_messages(output: Any, fetch_file: FileFetcher | None) -> ParseResult | None:
    if not isinstance(output, list):
        return None
    if not _is_message_list(output):
        return extract_from_object(output, source="array")

    result = ParseResult(source="messages")
    file_url: str | None = None
    for message in output:
        if not isinstance(message, dict):
            continue
        role = message.get("role")
        content = message.get("content") if isinstance(message.get("content"), list) else []
        for block in content:
            if not isinstance(block, dict):
                continue
            file_url = _json_file_url(block) or file_url
            text = block.get("text")
            if (
                not result.contacts
                and role == "assistant"
                and block.get("type") == "output_text"
                and isinstance(text, str)
            ):
                result.merge_from(extract_from_text(text, source="output_text"))

    if file_url and fetch_file is not None:
        result.merge_from(_decode_file(file_url, fetch_file))
    if not result.contacts:
        loose = extract_from_object(output, source="array")
        if loose.contacts:
            return loose
    return result


def _decode_file(file_url: str, fetch_file: FileFetcher) -> ParseResult:
    try:
        payload = fetch_file(file_url)
    except Exception as exc:  # noqa: BLE001 - any download failure degrades to text output
        logger.warning(
            "enrichment.parser.file_failed",
            extra={"file_url": file_url[:100], "error": str(exc)},
        )
        return ParseResult(source="file")
    result = extract_from_object(payload, source="file")
    logger.info("enrichment.parser.file_decoded", extra={"contacts": len(result.contacts)})
    return result


def _decode_string(output: Any) -> ParseResult | None:
    if not isinstance(output, str):
        return None
    try:
        parsed = json.loads(output)
    except (ValueError, RecursionError):
        return extract_from_text(output, source="string")
    return extract_from_object(parsed, source="string")


def _decode_object(output: Any) -> ParseResult | None:
    if not isinstance(output, dict):
        return None
    return extract_from_object(output, source="object")


def parse_agent_output(output: Any, fetch_file: FileFetcher | None = None) -> ParseResult:
    """Run the ordered decoders over `output`; the first applicable one wins."""
    decoders: tuple[Callable[[Any], ParseResult | None], ...] = (
        lambda value: _decode_messages(value, fetch_file),
        _decode_string,
        _decode_object,
    )
    try:
        for decoder in decoders:
            result = decoder(output)
            if result is not None:
                return result
    except Exception as exc:  # noqa: BLE001 - malformed output yields an empty result
        logger.warning(
            "enrichment.parser.failed",
            extra={"error_type": type(exc).__name__, "error": str(exc)[:200]},
        )
    return ParseResult()
