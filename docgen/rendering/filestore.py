import base64
import logging
import os

from docgen.api.v1.metrics import ARTIFACT_LINK_FAILURES
from docgen.domain.errors import RenderKind, UploadError
from recordstore import RecordStoreClient, RecordStoreError

logger = logging.getLogger(__name__)


def _upload_error(e: RecordStoreError, filename: str) -> UploadError:
    status = e.status_code
    if status is None or status == 401 or status == 429 or status >= 500:
        kind = RenderKind.UNAVAILABLE
    elif status in (400, 404):
        kind = RenderKind.INVALID_REQUEST
    else:
        kind = RenderKind.UNKNOWN
    return UploadError(kind, f"Upload of {filename} failed: {e}", status_code=status)


class RecordStoreFileStore:
    """
    Stores artifacts as ContentVersion records and shares them with the
    parent records named in the request.

    Only the ContentVersion insert can fail an upload. Once the version
    exists its id is returned, and parent links that cannot be created are
    logged and counted so a retry never uploads the artifact twice.
    """

    def __init__(self, client: RecordStoreClient):
        self.client = client

    async def upload(self, content: bytes, filename: str, parent_links: list[str]) -> str:
        title, _ = os.path.splitext(filename)
        try:
            version_id = await self.client.insert("ContentVersion", {
                "Title": title or filename,
                "PathOnClient": filename,
                "VersionData": base64.b64encode(content).decode("ascii"),
            })
        except RecordStoreError as e:
            raise _upload_error(e, filename) from e

        linked = await self._link_parents(version_id, parent_links) if parent_links else 0
        logger.info("Uploaded %s as ContentVersion %s (%d/%d parent links)", filename, version_id, linked, len(parent_links))
        return version_id

    async def _link_parents(self, version_id: str, parent_links: list[str]) -> int:
        try:
            version = await self.client.get("ContentVersion", version_id, fields=["ContentDocumentId"])
        except RecordStoreError as e:
            logger.error("Could not read ContentVersion %s to link parents: %s", version_id, e)
            ARTIFACT_LINK_FAILURES.inc(len(parent_links))
            return 0
        document_id = version["ContentDocumentId"] if version else None
        if not document_id:
            logger.error("ContentVersion %s has no ContentDocumentId, parents not linked", version_id)
            ARTIFACT_LINK_FAILURES.inc(len(parent_links))
            return 0

        linked = 0
        for parent_id in parent_links:
            try:
                await self.client.insert("ContentDocumentLink", {
                    "ContentDocumentId": document_id,
                    "LinkedEntityId": parent_id,
                    "ShareType": "V",
                    "Visibility": "AllUsers",
                })
            except RecordStoreError as e:
                logger.error("Could not link ContentVersion %s to %s: %s", version_id, parent_id, e)
                ARTIFACT_LINK_FAILURES.inc()
                continue
            linked += 1
        return linked
