"""
Normalizing the raw responses into a uniform, client-library-neutral shape.
"""
import dataclasses
import json
from typing import Any, Mapping

import aiohttp

from kubefetch._cogs.clients import errors


@dataclasses.dataclass(frozen=True)
class NormalizedResponse:
    """
    A successful response with its body decoded by the declared media type.

    The body is ``None`` if the response had no body at all (zero length).
    """
    status_code: int
    status_message: str
    headers: Mapping[str, str]
    body: Any = None


async def normalize(
        response: aiohttp.ClientResponse,
        *,
        text: bool = False,
) -> NormalizedResponse:
    """
    Read and decode the whole body, and release the response.

    The decoding rule, in the order of priority:

    * If the endpoint produces plain text, the body is decoded as text.
    * Otherwise, the body is parsed as JSON.
    * If the JSON parsing fails on a zero-length body, it is not an error:
      the body is absent (e.g. for the empty 200/204 responses).
    * If the JSON parsing fails on a non-empty body, it is a hard error.
    """
    async with response:
        raw = await response.read()

    body: Any
    if text:
        body = raw.decode(response.charset or 'utf-8', errors='replace')
    else:
        try:
            body = json.loads(raw)
        except ValueError as e:  # incl. json.JSONDecodeError & UnicodeDecodeError
            if raw:
                raise errors.DecodeError(
                    f"Malformed JSON in the response body: {e}",
                    body=raw,
                    status_code=response.status,
                ) from e
            body = None

    return NormalizedResponse(
        status_code=response.status,
        status_message=response.reason or '',
        headers=response.headers,
        body=body,
    )
