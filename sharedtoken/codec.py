"""
Shared token derivation.

The token is SHA-1 over local id + issuer + salt, base64-encoded and
made URL-safe. The three parts are joined without a separator so that
values issued by earlier deployments keep matching.
"""

import base64
import hashlib
import re

PRINTABLE_PATTERN = re.compile(r"[A-Za-z0-9@\\]+")


def url_safe(encoded: str) -> str:
    """Map a standard base64 string onto the URL-safe alphabet, dropping padding."""
    return encoded.replace("/", "_").replace("+", "-").replace("=", "")


def generate(local_id: str, issuer: str, salt: bytes) -> str:
    """
    Compute the shared token for a principal.

    Args:
        local_id: Concatenated source attribute values
        issuer: Identity provider entity ID
        salt: Deployment secret

    Returns:
        URL-safe base64 SHA-1 digest, 27 characters long

    Raises:
        ValueError: If any input is missing
    """
    if local_id is None:
        raise ValueError("local_id is required")
    if not issuer:
        raise ValueError("issuer is required")
    if salt is None:
        raise ValueError("salt is required")

    global_id = local_id + issuer + salt.decode("utf-8", errors="replace")
    digest = hashlib.sha1(global_id.encode("utf-8")).digest()
    return url_safe(base64.b64encode(digest).decode("ascii"))


def printable(local_id: str) -> str:
    """
    Return a form of local_id that is safe to write to a log.

    Plain alphanumeric ids (plus '@' and '\\') are returned as is; anything
    else, e.g. a binary objectGUID rendered as a string, is base64-encoded.
    """
    if PRINTABLE_PATTERN.fullmatch(local_id):
        return local_id
    return base64.b64encode(local_id.encode("utf-8")).decode("ascii")
