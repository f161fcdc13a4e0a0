"""HMAC-SHA256 request signing for Binance USD-M futures REST endpoints.

The provider never reads the clock and never performs I/O: the caller puts
``timestamp``/``recvWindow`` into the parameter map before signing. The
signature covers the URL-encoded, key-sorted parameter string, and that same
string is what the transport must send, so the encoded form is returned
alongside the ordered pairs.
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any
from urllib.parse import urlencode

API_KEY_HEADER = "X-MBX-APIKEY"
SIGNATURE_PARAMETER = "signature"

_QUERY_METHODS = frozenset({"GET", "DELETE"})


class ParameterPosition(StrEnum):
    QUERY = "query"
    BODY = "body"


@dataclass(frozen=True, slots=True)
class ApiCredentials:
    key: str
    secret: str = field(repr=False)

    def __post_init__(self) -> None:
        if not self.key or not self.secret:
            raise ValueError("API key and secret must both be non-empty")

    def __getstate__(self) -> None:
        raise TypeError("ApiCredentials cannot be serialized")


@dataclass(frozen=True, slots=True)
class SignedRequest:
    method: str
    query_params: tuple[tuple[str, str], ...]
    body_params: tuple[tuple[str, str], ...]
    headers: dict[str, str]
    signed: bool

    @property
    def query_string(self) -> str:
        return encode_parameters(self.query_params)

    @property
    def body(self) -> str:
        return encode_parameters(self.body_params)

    @property
    def signature(self) -> str | None:
        for key, value in (*self.query_params, *self.body_params):
            if key == SIGNATURE_PARAMETER:
                return value
        return None


def _render_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def canonical_parameters(params: Mapping[str, Any]) -> tuple[tuple[str, str], ...]:
    """Key-sorted ``(name, value)`` pairs with ``None`` values dropped."""
    return tuple((key, _render_value(value)) for key, value in sorted(params.items()) if value is not None)


def encode_parameters(pairs: tuple[tuple[str, str], ...]) -> str:
    return urlencode(pairs)


def sign_payload(secret: str, payload: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def default_parameter_position(method: str) -> ParameterPosition:
    return ParameterPosition.QUERY if method.upper() in _QUERY_METHODS else ParameterPosition.BODY


class BinanceAuthenticationProvider:
    def __init__(self, credentials: ApiCredentials) -> None:
        self._credentials = credentials

    @property
    def api_key(self) -> str:
        return self._credentials.key

    def __repr__(self) -> str:
        return f"{type(self).__name__}(api_key={self._credentials.key!r})"

    def sign(self, params: Mapping[str, Any]) -> str:
        return sign_payload(self._credentials.secret, encode_parameters(canonical_parameters(params)))

    def authenticate_request(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
        *,
        signed: bool,
        parameter_position: ParameterPosition | None = None,
    ) -> SignedRequest:
        return build_request(
            method,
            params,
            signed=signed,
            parameter_position=parameter_position,
            credentials=self._credentials,
        )


def build_request(
    method: str,
    params: Mapping[str, Any] | None = None,
    *,
    signed: bool = False,
    parameter_position: ParameterPosition | None = None,
    credentials: ApiCredentials | None = None,
) -> SignedRequest:
    method_upper = method.upper()
    position = parameter_position or default_parameter_position(method_upper)
    pairs = canonical_parameters(params or {})

    if signed:
        if credentials is None:
            raise ValueError("Signed requests require API credentials")
        signature = sign_payload(credentials.secret, encode_parameters(pairs))
        pairs = (*pairs, (SIGNATURE_PARAMETER, signature))

    headers: dict[str, str] = {}
    if credentials is not None:
        headers[API_KEY_HEADER] = credentials.key
    if position is ParameterPosition.BODY:
        headers["Content-Type"] = "application/x-www-form-urlencoded"
        return SignedRequest(method=method_upper, query_params=(), body_params=pairs, headers=headers, signed=signed)
    return SignedRequest(method=method_upper, query_params=pairs, body_params=(), headers=headers, signed=signed)
