"""
Field validators for OAuth documents.

Structured fields are pulled out of JSON documents (token responses, error
responses, the token record) and key=value credential files, then checked
against the character sets defined by RFC 6749 Appendix A and the token68
syntax of RFC 6750 section 2.1.

https://www.rfc-editor.org/rfc/rfc6749#appendix-A
https://www.rfc-editor.org/rfc/rfc6750#section-2.1
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Type

from .exceptions import ConfigError, OAuthBearerError, ValidationError

logger = logging.getLogger(__name__)

ALPHA = "A-Za-z"
DIGIT = "0-9"
VSCHAR = r"\x20-\x7E"
NQCHAR = r"\x21\x23-\x5B\x5D-\x7E"
NQSCHAR = r"\x20\x21\x23-\x5B\x5D-\x7E"

# Field names may end up in diagnostics and external queries.
FIELD_NAME_PATTERN = re.compile(r"[A-Za-z_]+")


@dataclass(frozen=True)
class FieldRule:
    """
    Grammar for a single field.

    Attributes:
        pattern: Regular expression the whole (non-empty) value must match
        required: Whether an empty or missing value is rejected
    """

    pattern: str
    required: bool = True

    def matches(self, value: str) -> bool:
        if value == "":
            return not self.required
        return re.fullmatch(self.pattern, value) is not None


SCOPE_PATTERN = rf"[{NQCHAR}]+(?: [{NQCHAR}]+)*"

CREDENTIAL_FIELDS: Dict[str, FieldRule] = {
    "client_id": FieldRule(rf"[{VSCHAR}]+"),
    "client_secret": FieldRule(rf"[{VSCHAR}]+"),
    "scope": FieldRule(SCOPE_PATTERN),
}

# access_token must be a bearer token, so it is held to token68 instead of
# the looser vschar set. expires_in__absolute_utc is not sent by the provider,
# it is added locally when the response is recorded.
TOKEN_RESPONSE_FIELDS: Dict[str, FieldRule] = {
    "access_token": FieldRule(rf"[-._~+/{ALPHA}{DIGIT}]+=*"),
    "expires_in": FieldRule(rf"[{DIGIT}]+"),
    "expires_in__absolute_utc": FieldRule(rf"[{DIGIT}]+", required=False),
    "refresh_token": FieldRule(rf"[{VSCHAR}]+"),
    "scope": FieldRule(SCOPE_PATTERN),
    "token_type": FieldRule("(?i:bearer)"),
}

ERROR_RESPONSE_FIELDS: Dict[str, FieldRule] = {
    "error": FieldRule(rf"[{NQSCHAR}]+"),
    "error_description": FieldRule(rf"[{NQSCHAR}]+", required=False),
}


def _stringify(name: str, value: Any, source: str) -> str:
    """Render a JSON scalar the way a command-line JSON tool prints it raw."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    raise ValidationError(
        f"failed due to invalid {name} value in {source}", field=name, source=source
    )


def check_field_names(names) -> None:
    """Reject field names outside the safe character subset."""
    for name in names:
        if not FIELD_NAME_PATTERN.fullmatch(name):
            raise ValidationError(
                f"failed due to unexpected {name!r} key character in input", field=name
            )


def validate_field(name: str, value: Any, rule: FieldRule, source: str) -> str:
    """
    Check one value against its grammar.

    Returns:
        The value as text ("" for null or missing)

    Raises:
        ValidationError: If the value does not match the rule
    """
    text = _stringify(name, value, source)
    if not rule.matches(text):
        raise ValidationError(
            f"failed due to invalid or missing {name} value in {source}",
            field=name,
            source=source,
        )
    return text


def validate_fields(
    document: Mapping[str, Any], fields: Mapping[str, FieldRule], source: str
) -> Dict[str, str]:
    """
    Extract and check the declared fields of a document.

    Args:
        document: Parsed JSON object or key=value mapping
        fields: Field names and their grammars
        source: Where the document came from (used in error messages)

    Returns:
        Dictionary of field name to validated text value, in sorted key order

    Raises:
        ValidationError: If any field fails its grammar
    """
    names = sorted(fields)
    check_field_names(names)

    result = {}
    for name in names:
        result[name] = validate_field(name, document.get(name), fields[name], source)

    logger.debug(f"Validated fields {', '.join(names)} from {source}")
    return result


def load_json_object(
    text: str, source: str, error: Type[OAuthBearerError] = ConfigError
) -> Dict[str, Any]:
    """
    Parse text as a JSON object.

    Args:
        text: JSON text
        source: Where the text came from (used in error messages)
        error: Exception class raised for text that is not a JSON object

    Raises:
        ConfigError: If the text is not a JSON object (unless error says otherwise)
    """
    try:
        document = json.loads(text)
    except ValueError as e:
        raise error(f"failed parsing JSON in {source}: {e}") from e

    if not isinstance(document, dict):
        raise error(f"failed parsing JSON in {source}: expected an object")

    return document


def validate_token_response(document: Mapping[str, Any], source: str) -> Dict[str, str]:
    """Validate the six token fields of a token response or token record."""
    return validate_fields(document, TOKEN_RESPONSE_FIELDS, source)


def validate_error_response(document: Mapping[str, Any], source: str) -> Dict[str, str]:
    """Validate an RFC 6749 section 5.2 error response."""
    return validate_fields(document, ERROR_RESPONSE_FIELDS, source)


def validate_credential(document: Mapping[str, Any], source: str) -> Dict[str, str]:
    """Validate client_id, client_secret and scope of a credential file."""
    return validate_fields(document, CREDENTIAL_FIELDS, source)
