"""OAuth 1.0a request signing (HMAC-SHA1) for the Discogs API."""
import base64
import hashlib
import hmac
import time
import uuid
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, quote, urlsplit, urlunsplit

from .auth import OAuthCredentials

def percent_encode(value: str) -> str:
    return quote(value, safe="-._~")

def oauth_parameters(
    credentials: OAuthCredentials,
    nonce: str,
    timestamp: str,
    callback: Optional[str] = None,
    verifier: Optional[str] = None,
) -> Dict[str, str]:
    params = {
        "oauth_consumer_key": credentials.consumer_key,
        "oauth_nonce": nonce,
        "oauth_signature_method": "HMAC-SHA1",
        "oauth_timestamp": timestamp,
        "oauth_version": "1.0",
    }
    if credentials.oauth_token:
        params["oauth_token"] = credentials.oauth_token
    if callback:
        params["oauth_callback"] = callback
    if verifier:
        params["oauth_verifier"] = verifier
    return params

def signature_base_string(method: str, url: str, params: Dict[str, str]) -> str:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"Cannot sign request for invalid URL: {url!r}")

    # Query parameters are signed alongside the oauth_* ones
    pairs: List[Tuple[str, str]] = [(percent_encode(k), percent_encode(v)) for k, v in params.items()]
    pairs.extend(
        (percent_encode(k), percent_encode(v))
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
    )
    normalized = "&".join(f"{k}={v}" for k, v in sorted(pairs))
    base_url = urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path or "/", "", ""))

    return "&".join([method.upper(), percent_encode(base_url), percent_encode(normalized)])

def make_authorization_header(
    method: str,
    url: str,
    credentials: OAuthCredentials,
    callback: Optional[str] = None,
    verifier: Optional[str] = None,
    nonce: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> str:
    """Return the value of the Authorization header for one request."""
    params = oauth_parameters(
        credentials,
        nonce=nonce or uuid.uuid4().hex,
        timestamp=timestamp or str(int(time.time())),
        callback=callback,
        verifier=verifier,
    )
    base = signature_base_string(method, url, params)
    key = f"{percent_encode(credentials.consumer_secret)}&{percent_encode(credentials.oauth_token_secret or '')}"
    digest = hmac.new(key.encode(), base.encode(), hashlib.sha1).digest()
    params["oauth_signature"] = base64.b64encode(digest).decode()

    header = ", ".join(
        f'{percent_encode(k)}="{percent_encode(v)}"' for k, v in sorted(params.items())
    )
    return f"OAuth {header}"
