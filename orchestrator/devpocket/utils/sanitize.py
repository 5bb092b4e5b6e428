"""
Strip credentials and cluster endpoints from text bound for logs or clients.
"""
import re

_TOKEN_PARAM = re.compile(r"(token=)[^&\s\"']+", re.IGNORECASE)
_BEARER = re.compile(r"(bearer\s+)[A-Za-z0-9\-_\.=]+", re.IGNORECASE)
_URL = re.compile(r"\b(?:https?|wss?)://[^\s\"'<>]+", re.IGNORECASE)
_IPV4 = re.compile(r"\b\d{1,3}(?:\.\d{1,3}){3}(?::\d+)?\b")
_CLUSTER_HOST = re.compile(r"\b[a-z0-9][a-z0-9\-]*(?:\.[a-z0-9\-]+)*\.(?:svc\.cluster\.local|com|net|org|io|cloud|internal|local|dev)(?::\d+)?\b", re.IGNORECASE)

REDACTED = "[redacted]"


def sanitize_message(message) -> str:
    """Return ``message`` as text with tokens, URLs and hostnames removed."""
    if message is None:
        return ""
    text = str(message)
    text = _TOKEN_PARAM.sub(rf"\1{REDACTED}", text)
    text = _BEARER.sub(rf"\1{REDACTED}", text)
    text = _URL.sub(REDACTED, text)
    text = _IPV4.sub(REDACTED, text)
    text = _CLUSTER_HOST.sub(REDACTED, text)
    return text


def sanitize_path(path: str) -> str:
    """Drop the query string from a request path."""
    return path.split("?", 1)[0] if path else ""
