"""Generic request/response contract between the engine and the transport."""

from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class HttpMethod(enum.StrEnum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class ApiRequest(BaseModel):
    """A provider request before authentication headers are added.

    At most one of ``json_body`` and ``form`` may be set.
    """

    model_config = ConfigDict(frozen=True)

    method: HttpMethod = HttpMethod.GET
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    json_body: Any = None
    form: dict[str, str] | None = None
    expect_json: bool = True


class RawResponse(BaseModel):
    """What an :class:`~pycloudsync._transport.HttpTransport` hands back."""

    model_config = ConfigDict(frozen=True)

    status: int
    body: str = ""


class ApiResponse(BaseModel):
    """A successful (2xx) response, body already decoded."""

    model_config = ConfigDict(frozen=True)

    status_code: int
    text: str = ""
    data: Any = None
