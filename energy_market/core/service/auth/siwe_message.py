"""
Sign-In with Ethereum message codec.

Wire format (newline separated, fixed order):

    <domain> wants you to sign in with your Ethereum account:
    <address>

    <statement>

    URI: <origin>
    Version: 1
    Chain ID: <integer>
    Nonce: <nonce>
    Issued At: <ISO-8601 timestamp>

Parsing is strict about shape and required fields but does not normalize the
address; proof of the address comes from the signature, not from parsing.
"""

import re
from typing import Dict

from energy_market.core.exceptions.handler import MessageParseError, ServiceErrorCode
from energy_market.core.service.auth.models.challenge import SignInMessage

HEADER_SUFFIX = " wants you to sign in with your Ethereum account:"
MIN_LINES = 8
REQUIRED_FIELDS = ("URI", "Version", "Chain ID", "Nonce", "Issued At")

_HEADER = re.compile(r'^(.+) wants you to sign in with your Ethereum account:$')
_FIELDS_START = 5


def _split_fields(lines) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for line in lines:
        line = line.strip()
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        fields[key.strip()] = value.strip()
    return fields


def parse(raw: str) -> SignInMessage:
    """Parse a raw sign-in message, raising MessageParseError on any shape problem"""
    if not isinstance(raw, str) or not raw:
        raise MessageParseError("Sign-in message is empty")

    lines = raw.split("\n")
    if len(lines) < MIN_LINES:
        raise MessageParseError("Invalid SIWE message format: too few lines")

    header = _HEADER.match(lines[0].rstrip("\r"))
    if not header:
        raise MessageParseError("Invalid SIWE message format: unrecognized first line")

    address = lines[1].strip()
    if not address:
        raise MessageParseError("Invalid SIWE message format: missing address", code=ServiceErrorCode.MISSING_FIELD)

    fields = _split_fields(lines[_FIELDS_START:])
    missing = [name for name in REQUIRED_FIELDS if not fields.get(name)]
    if missing:
        raise MessageParseError(
            f"Missing required fields in SIWE message: {', '.join(missing)}",
            code=ServiceErrorCode.MISSING_FIELD,
            details={"missing_fields": missing}
        )

    try:
        chain_id = int(fields["Chain ID"])
    except ValueError:
        raise MessageParseError("Invalid SIWE message format: Chain ID is not an integer")

    return SignInMessage(
        domain=header.group(1),
        address=address,
        statement=lines[3].strip(),
        uri=fields["URI"],
        version=fields["Version"],
        chain_id=chain_id,
        nonce=fields["Nonce"],
        issued_at=fields["Issued At"],
    )


def serialize(message: SignInMessage) -> str:
    """Render the exact text a wallet is asked to sign"""
    return "\n".join([
        f"{message.domain}{HEADER_SUFFIX}",
        message.address,
        "",
        message.statement,
        "",
        f"URI: {message.uri}",
        f"Version: {message.version}",
        f"Chain ID: {message.chain_id}",
        f"Nonce: {message.nonce}",
        f"Issued At: {message.issued_at}",
    ])
