import logging
from typing import Any, Optional

import httpx

from docgen.domain.errors import RenderError, RenderKind
from docgen.domain.states import OutputFormat

logger = logging.getLogger(__name__)

_STATUS_KINDS = {
    400: RenderKind.INVALID_REQUEST,
    404: RenderKind.TEMPLATE_NOT_FOUND,
    408: RenderKind.TIMEOUT,
    415: RenderKind.UNSUPPORTED_FORMAT,
    422: RenderKind.INVALID_TEMPLATE,
    429: RenderKind.UNAVAILABLE,
}


def _error_for(resp: httpx.Response, template_ref: str) -> RenderError:
    kind = _STATUS_KINDS.get(resp.status_code)
    if kind is None:
        kind = RenderKind.UNAVAILABLE if resp.status_code >= 500 else RenderKind.UNKNOWN

    try:
        detail = resp.json().get("message") or resp.text
    except (ValueError, AttributeError):
        detail = resp.text

    if kind == RenderKind.TEMPLATE_NOT_FOUND:
        message = f"Template {template_ref} not found"
    else:
        message = f"Render failed ({resp.status_code}): {detail}"
    return RenderError(kind, message, status_code=resp.status_code)


class RenderServiceClient:
    """Renderer backed by an HTTP template-merge/conversion service."""

    def __init__(self, base_url: str, timeout: float = 120.0, http: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.client = http or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def render(
        self,
        template_ref: str,
        merge_data: dict[str, Any],
        locale: str,
        timezone: str,
        output_format: OutputFormat,
    ) -> bytes:
        payload = {
            "templateId": template_ref,
            "data": merge_data,
            "locale": locale,
            "timezone": timezone,
            "outputFormat": str(output_format),
        }
        try:
            resp = await self.client.post("/render", json=payload)
        except httpx.TimeoutException as e:
            raise RenderError(RenderKind.TIMEOUT, f"Render of template {template_ref} timed out") from e
        except httpx.HTTPError as e:
            raise RenderError(RenderKind.UNAVAILABLE, f"Render service unreachable: {e}") from e

        if resp.status_code >= 400:
            raise _error_for(resp, template_ref)

        logger.debug("Rendered template %s as %s (%d bytes)", template_ref, output_format, len(resp.content))
        return resp.content

    async def close(self):
        await self.client.aclose()
