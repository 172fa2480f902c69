from typing import Any, Protocol

from docgen.domain.states import OutputFormat


class Renderer(Protocol):
    """Merges data into a template and returns the converted document bytes.

    Raises RenderError on failure.
    """

    async def render(
        self,
        template_ref: str,
        merge_data: dict[str, Any],
        locale: str,
        timezone: str,
        output_format: OutputFormat,
    ) -> bytes: ...


class FileStore(Protocol):
    """Persists a generated artifact and returns its id. Raises UploadError on failure."""

    async def upload(self, content: bytes, filename: str, parent_links: list[str]) -> str: ...
